"""Ad-attribution relay request schema."""

from typing import Literal, Optional

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EventName = Literal[
    "ViewContent",
    "Purchase",
    "Lead",
    "CompleteRegistration",
    "AddToCart",
    "InitiateCheckout",
]


class TrackedUserData(BaseModel):
    """Raw PII supplied by the browser; hashed before it leaves the server."""

    em: Optional[str] = None  # email
    fn: Optional[str] = None  # first name
    ln: Optional[str] = None  # last name
    st: Optional[str] = None  # state
    db: Optional[str] = None  # date of birth, YYYYMMDD
    ph: Optional[str] = None  # phone


class TrackedCustomData(BaseModel):
    content_type: Optional[str] = None
    content_category: Optional[str] = None
    content_ids: Optional[list[str]] = None
    content_name: Optional[str] = None
    currency: Optional[str] = None
    value: Optional[float] = None
    num_items: Optional[int] = None
    transaction_id: Optional[str] = None
    bmi: Optional[float] = None
    age_group: Optional[str] = None
    eligible: Optional[bool] = None
    billing_period: Optional[str] = None
    dosage: Optional[str] = None
    coupon_applied: Optional[str] = None
    variant_selected: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_name: Optional[str] = None
    billing_cycle: Optional[str] = None


class TrackEventRequest(BaseModel):
    """Browser event relayed to the Conversions API."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_name: EventName
    event_source_url: AnyHttpUrl
    user_agent: Optional[str] = Field(None, max_length=1000)
    ip_address: Optional[str] = Field(None, max_length=100)
    user_data: Optional[TrackedUserData] = None
    custom_data: Optional[TrackedCustomData] = None
