"""Facebook Conversions API relay endpoint."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request, Response

from telehealth.api.deps import get_ad_sink
from telehealth.core.rate_limit import track_event_limit
from telehealth.schemas.subscription import AckResponse
from telehealth.schemas.tracking import TrackEventRequest
from telehealth.services.ad_attribution import AdEventSink, ConversionEvent

router = APIRouter()


def client_ip(request: Request) -> Optional[str]:
    """Best guess at the browser's address behind proxies."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


@router.post("/track-event", response_model=AckResponse)
@track_event_limit
async def track_event(
    request: Request,
    response: Response,
    event: TrackEventRequest,
    ads: Annotated[AdEventSink, Depends(get_ad_sink)],
) -> AckResponse:
    """
    Relay a browser conversion event server-side.

    User data is hashed before it is sent. Client address and user agent
    fall back to the request headers when the body omits them.
    """
    user_data = event.user_data.model_dump(exclude_none=True) if event.user_data else {}
    custom_data = event.custom_data.model_dump(exclude_none=True) if event.custom_data else {}

    await ads.send_event(
        ConversionEvent(
            event_name=event.event_name,
            event_source_url=str(event.event_source_url),
            client_ip_address=event.ip_address or client_ip(request),
            client_user_agent=event.user_agent or request.headers.get("user-agent"),
            user_data=user_data,
            custom_data=custom_data,
        )
    )
    return AckResponse(success=True, message="Event sent successfully")
