# remote_backup.py
"""HTTP client for the per-account remote backup of search results."""

import time
import uuid
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .config import config
from .logging_utils import get_logger
from .models import (
    Classification,
    Enrichment,
    Lead,
    RemoteBackupError,
    SearchContext,
    SearchType,
)


class RemoteSnapshot(BaseModel):
    """Leads and the latest search context as held by the remote backup."""

    leads: List[Lead] = Field(default_factory=list)
    search_context: Optional[SearchContext] = None
    session_id: Optional[str] = None


class RemoteBackup(Protocol):
    """Operations the persistence manager needs from the remote tier."""

    async def save(
        self, leads: List[Lead], context: Optional[SearchContext]
    ) -> Dict[str, Any]:
        ...

    async def fetch(self, limit: Optional[int] = None) -> RemoteSnapshot:
        ...

    async def delete(self, clear_all: bool = True) -> int:
        ...


def lead_to_remote(lead: Lead) -> Dict[str, Any]:
    """Map a lead to the backup service's record format."""
    record: Dict[str, Any] = {
        "id": lead.id,
        "name": lead.name,
        "address": lead.address,
        "phone": lead.phone,
        "website": lead.website,
        "email": lead.email,
        "rating": lead.rating,
        "reviewCount": lead.review_count,
        "platform": lead.platform,
        "placeId": lead.place_id,
        "enrichmentStatus": lead.enrichment_status.value,
    }
    if lead.classification is not None:
        record["aiClassification"] = (
            lead.classification.tier.value if lead.classification.tier else None
        )
        record["leadScore"] = lead.classification.score
    if lead.enrichment is not None:
        record["enrichment"] = lead.enrichment.model_dump(mode="json")
    return record


def lead_from_remote(record: Dict[str, Any]) -> Lead:
    """Map a backup service record to a lead.

    Raises:
        ValueError: If the record has no business name.
    """
    data: Dict[str, Any] = {
        "id": str(record.get("lead_id") or record.get("id") or f"lead_{uuid.uuid4().hex[:12]}"),
        "name": record.get("business_name") or record.get("name"),
        "address": record.get("address"),
        "phone": record.get("phone"),
        "website": record.get("website"),
        "email": record.get("email"),
        "rating": record.get("rating") or None,
        "review_count": record.get("review_count") or record.get("reviewCount"),
        "source": record.get("source_type") or SearchType.GMB.value,
        "platform": record.get("platform"),
        "place_id": record.get("place_id") or record.get("placeId"),
        "search_query": record.get("search_query"),
        "search_location": record.get("search_location"),
    }
    status = record.get("enrichment_status") or record.get("enrichmentStatus")
    if status:
        data["enrichment_status"] = status
    if record.get("created_at"):
        data["created_at"] = record["created_at"]

    tier = record.get("ai_classification") or record.get("aiClassification")
    score = record.get("lead_score") or record.get("leadScore")
    if tier or score is not None:
        data["classification"] = Classification(tier=tier, score=score)

    if record.get("enrichment"):
        data["enrichment"] = Enrichment.from_payload(record["enrichment"])
    return Lead(**data)


class RemoteBackupClient:
    """Client for the remote backup service.

    Every failure (network, HTTP status or ``success: false``) is raised as
    RemoteBackupError so callers can degrade to local-only persistence.
    """

    ENDPOINT = "/search-leads"

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the remote backup client.

        Args:
            base_url: Service base URL. Defaults to config value.
            auth_token: Bearer token. Defaults to config value.
            timeout: Request timeout in seconds. Defaults to config value.
            client: Pre-built AsyncClient.
        """
        self.logger = get_logger(__name__)
        self.base_url = (base_url or config.REMOTE_BACKUP_URL).rstrip("/")
        self._auth_token = auth_token if auth_token is not None else config.AUTH_TOKEN
        self.timeout = timeout or config.REMOTE_BACKUP_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def _request(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{self.ENDPOINT}"
        try:
            response = await self._get_client().request(
                method, url, headers=self._headers(), **kwargs
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteBackupError(
                f"Remote backup {method} failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteBackupError(f"Remote backup {method} failed: {e}") from e
        except ValueError as e:
            raise RemoteBackupError(f"Remote backup returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise RemoteBackupError(
                f"Remote backup returned an unexpected {type(body).__name__} body"
            )
        if not body.get("success"):
            raise RemoteBackupError(body.get("error") or f"Remote backup {method} failed")
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise RemoteBackupError("Remote backup returned malformed data")
        return data

    async def save(
        self,
        leads: List[Lead],
        context: Optional[SearchContext],
        clear_previous: bool = True,
    ) -> Dict[str, Any]:
        """Replace the remote copy of the account's search results.

        Returns:
            Acknowledgement with ``saved``, ``updated`` and ``searchSessionId``.
        """
        session_id = f"search_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        payload = {
            "leads": [lead_to_remote(lead) for lead in leads],
            "searchQuery": context.query if context else "",
            "searchLocation": context.location if context else "",
            "sourceType": (context.search_type if context else SearchType.GMB).value,
            "searchSessionId": session_id,
            "clearPrevious": clear_previous,
        }
        data = await self._request("POST", json=payload)
        self.logger.info(
            f"Backed up {len(leads)} leads remotely",
            extra={"saved": data.get("saved"), "updated": data.get("updated")},
        )
        return data

    async def fetch(self, limit: Optional[int] = None) -> RemoteSnapshot:
        """Fetch the account's backed-up leads and latest search."""
        params = {"limit": limit or config.REMOTE_FETCH_LIMIT}
        data = await self._request("GET", params=params)

        leads = []
        for record in data.get("leads") or []:
            if not isinstance(record, dict):
                self.logger.warning("Skipping malformed remote lead record")
                continue
            try:
                leads.append(lead_from_remote(record))
            except ValueError as e:
                self.logger.warning(f"Skipping invalid remote lead: {e}")

        context = None
        latest = data.get("latestSearch")
        if not isinstance(latest, dict):
            latest = None
        if latest and latest.get("query"):
            try:
                context = SearchContext(
                    query=latest["query"],
                    location=latest.get("location") or "",
                    search_type=latest.get("sourceType") or SearchType.GMB.value,
                )
            except ValueError as e:
                self.logger.warning(f"Ignoring malformed latest search: {e}")

        return RemoteSnapshot(
            leads=leads,
            search_context=context,
            session_id=str(latest["sessionId"]) if latest and latest.get("sessionId") else None,
        )

    async def delete(
        self,
        clear_all: bool = True,
        lead_ids: Optional[List[str]] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """Delete backed-up leads. Returns the number deleted."""
        payload: Dict[str, Any] = {"clearAll": clear_all}
        if lead_ids:
            payload["leadIds"] = lead_ids
        if session_id:
            payload["sessionId"] = session_id
        data = await self._request("DELETE", json=payload)
        return int(data.get("deleted") or 0)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "RemoteBackupClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
