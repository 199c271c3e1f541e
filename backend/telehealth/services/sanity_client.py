"""Sanity content store client (GROQ queries and mutations over HTTP)."""

import json
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from telehealth.core.config import settings
from telehealth.core.errors import ExternalServiceError

logger = structlog.get_logger(__name__)


class DocumentStore(ABC):
    """
    Interface to the document store.

    Writes accept a ``visibility`` flag: ``sync`` returns only once the
    change is readable, ``async`` returns as soon as it is accepted.
    """

    @abstractmethod
    async def query(self, groq: str, params: dict[str, Any] | None = None) -> Any:
        """Run a GROQ query and return its ``result``."""

    @abstractmethod
    async def create(self, document: dict[str, Any], visibility: str = "sync") -> str:
        """Create a document and return its id."""

    @abstractmethod
    async def patch(
        self,
        document_id: str,
        set_fields: dict[str, Any] | None = None,
        set_if_missing: dict[str, Any] | None = None,
        inc: dict[str, int] | None = None,
        visibility: str = "sync",
    ) -> None:
        """Patch a document by id."""


class SanityClient(DocumentStore):
    """
    HTTP client for the Sanity data API.

    A fresh ``httpx.AsyncClient`` is opened per call; ``transport`` lets tests
    swap the network for an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        project_id: str,
        dataset: str,
        token: str,
        api_version: str = "2024-01-01",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.project_id = project_id
        self.dataset = dataset
        self.token = token
        self.api_version = api_version.lstrip("v")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "SanityClient":
        return cls(
            project_id=settings.SANITY_PROJECT_ID,
            dataset=settings.SANITY_DATASET,
            token=settings.SANITY_API_TOKEN,
            api_version=settings.SANITY_API_VERSION,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.project_id}.api.sanity.io/v{self.api_version}/data"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    async def query(self, groq: str, params: dict[str, Any] | None = None) -> Any:
        """
        Run a GROQ query.

        Args:
            groq: Query text
            params: Query parameters, referenced as ``$name`` in the query

        Returns:
            The query's ``result`` value (None when nothing matched)

        Raises:
            ExternalServiceError: If the request fails
        """
        query_params = {"query": groq}
        for name, value in (params or {}).items():
            # Parameter values travel JSON-encoded
            query_params[f"${name}"] = json.dumps(value)

        url = f"{self.base_url}/query/{self.dataset}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=query_params, headers=self._headers())
                response.raise_for_status()
                return response.json().get("result")
        except httpx.HTTPError as e:
            logger.error("sanity.query.failed", error=str(e))
            raise ExternalServiceError("Content store query failed") from e

    async def _mutate(self, mutations: list[dict[str, Any]], visibility: str) -> dict[str, Any]:
        url = f"{self.base_url}/mutate/{self.dataset}"
        params = {"returnIds": "true", "visibility": visibility}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    params=params,
                    json={"mutations": mutations},
                    headers=self._headers(),
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            logger.error("sanity.mutate.failed", error=str(e))
            raise ExternalServiceError("Content store update failed") from e

    async def create(self, document: dict[str, Any], visibility: str = "sync") -> str:
        """
        Create a document.

        Args:
            document: Document body including ``_type``
            visibility: ``sync`` or ``async``

        Returns:
            Id of the created document

        Raises:
            ExternalServiceError: If the request fails or no id comes back
        """
        body = await self._mutate([{"create": document}], visibility)
        results = body.get("results") or []
        if not results or not results[0].get("id"):
            raise ExternalServiceError("Content store did not return a document id")
        document_id = results[0]["id"]
        logger.info("sanity.document.created", document_id=document_id, doc_type=document.get("_type"))
        return document_id

    async def patch(
        self,
        document_id: str,
        set_fields: dict[str, Any] | None = None,
        set_if_missing: dict[str, Any] | None = None,
        inc: dict[str, int] | None = None,
        visibility: str = "sync",
    ) -> None:
        """
        Patch a document.

        ``setIfMissing`` is applied before ``set`` and ``inc`` within the same
        patch, so nested paths can be initialised and written in one call.

        Raises:
            ExternalServiceError: If the request fails
        """
        operation: dict[str, Any] = {"id": document_id}
        if set_if_missing:
            operation["setIfMissing"] = set_if_missing
        if set_fields:
            operation["set"] = set_fields
        if inc:
            operation["inc"] = inc

        await self._mutate([{"patch": operation}], visibility)
        logger.debug("sanity.document.patched", document_id=document_id)
