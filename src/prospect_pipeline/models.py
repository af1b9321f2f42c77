"""Pydantic models for the prospect pipeline data structures."""

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

SYNTHETIC_ID_PREFIXES = ("mock_", "synthetic_", "demo_")


def utcnow() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    pass


class DiscoveryError(PipelineError):
    """Raised when the discovery provider rejects or aborts a search."""

    pass


class DiscoveryTransportError(DiscoveryError):
    """Raised when the discovery stream cannot be reached or drops mid-flight."""

    pass


class RemoteBackupError(PipelineError):
    """Raised when a remote backup save, fetch or delete fails."""

    pass


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class EnrichmentStatus(str, Enum):
    """Progress of contact enrichment for a lead."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Ordering used when two records disagree; higher wins."""
        return _ENRICHMENT_RANK[self]


_ENRICHMENT_RANK = {
    EnrichmentStatus.PENDING: 0,
    EnrichmentStatus.PROCESSING: 1,
    EnrichmentStatus.FAILED: 2,
    EnrichmentStatus.COMPLETED: 3,
}


class LeadTier(str, Enum):
    """Classification tier assigned by the external scorer."""

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class SearchType(str, Enum):
    """Kind of discovery search."""

    GMB = "gmb"
    PLATFORM = "platform"


class SearchMode(str, Enum):
    """How a new search treats the resident lead set."""

    REPLACE = "replace"
    APPEND = "append"


class WorkflowStage(IntEnum):
    """Ordered dashboard workflow stages."""

    SEARCH = 1
    REVIEW = 2
    OUTREACH_SETUP = 3
    CALLING = 4


class SaveOrigin(str, Enum):
    """Tier a persistence record was produced for."""

    LOCAL_CACHE = "local-cache"
    REMOTE_BACKUP = "remote-backup"


class ConnectionStatus(str, Enum):
    """Observable connection state of a discovery stream."""

    VERIFYING = "verifying"
    RETRYING = "retrying"
    CONNECTED = "connected"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """Terminal outcome of an ingestion run."""

    COMPLETE = "complete"
    PARTIAL = "partial"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TerminalKind(str, Enum):
    """Terminal signal sent by the discovery provider."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


# ---------------------------------------------------------------------------
# Lead entity
# ---------------------------------------------------------------------------


def _clean_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class Enrichment(BaseModel):
    """Contact data discovered for a lead after ingestion.

    Every collection only grows; merging two enrichments never drops a value.
    """

    emails: Set[str] = Field(default_factory=set, description="Discovered emails")
    phones: Set[str] = Field(default_factory=set, description="Discovered phones")
    socials: Dict[str, str] = Field(
        default_factory=dict, description="Social profile URLs keyed by platform"
    )
    sources: Set[str] = Field(
        default_factory=set, description="Where the enrichment data came from"
    )
    catch_all: bool = Field(
        default=False, description="Whether the email domain accepts any address"
    )
    enriched_at: Optional[datetime] = Field(
        default=None, description="When the enrichment was produced"
    )
    url: Optional[str] = Field(default=None, description="Page that was crawled")

    @field_validator("emails", mode="before")
    @classmethod
    def normalize_emails(cls, v: Any) -> Set[str]:
        """Lower-case and strip emails, dropping blanks."""
        if not v:
            return set()
        return {str(e).strip().lower() for e in v if e and str(e).strip()}

    @field_validator("phones", "sources", mode="before")
    @classmethod
    def normalize_strings(cls, v: Any) -> Set[str]:
        """Strip values, dropping blanks."""
        if not v:
            return set()
        if isinstance(v, str):
            v = [v]
        return {str(p).strip() for p in v if p and str(p).strip()}

    @field_validator("socials", mode="before")
    @classmethod
    def normalize_socials(cls, v: Any) -> Dict[str, str]:
        """Lower-case platform names and drop empty URLs."""
        if not v:
            return {}
        return {
            str(platform).strip().lower(): str(url).strip()
            for platform, url in dict(v).items()
            if url and str(url).strip()
        }

    @field_serializer("emails", "phones", "sources")
    def serialize_sorted(self, values: Set[str]) -> List[str]:
        return sorted(values)

    @property
    def first_email(self) -> Optional[str]:
        """Deterministic first email (lexicographic)."""
        return min(self.emails) if self.emails else None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Enrichment":
        """Build an enrichment from a provider callback payload.

        Accepts both camelCase provider keys and snake_case keys.
        """
        sources = payload.get("sources") or payload.get("source") or []
        return cls(
            emails=payload.get("emails") or [],
            phones=payload.get("phones") or [],
            socials=payload.get("socials") or {},
            sources=sources,
            catch_all=bool(
                payload.get("catch_all")
                or payload.get("isCatchAll")
                or payload.get("is_catch_all")
            ),
            enriched_at=payload.get("enriched_at") or payload.get("scrapedAt"),
            url=payload.get("url"),
        )


class Classification(BaseModel):
    """Scorer output carried opaquely on a lead."""

    model_config = ConfigDict(extra="allow")

    tier: Optional[LeadTier] = Field(default=None, description="hot/warm/cold tier")
    score: Optional[float] = Field(default=None, description="Numeric lead score")


class Lead(BaseModel):
    """Canonical prospect record.

    Lead instances are treated as immutable values: every update produces a new
    instance, so a list of leads is a consistent snapshot.
    """

    id: str = Field(default_factory=lambda: f"lead_{uuid.uuid4().hex[:12]}")
    name: str = Field(..., description="Business name")
    address: Optional[str] = Field(default=None, description="Street address")
    phone: Optional[str] = Field(default=None, description="Primary phone")
    website: Optional[str] = Field(default=None, description="Website URL")
    email: Optional[str] = Field(default=None, description="Primary email")
    rating: Optional[float] = Field(default=None, description="Star rating")
    review_count: Optional[int] = Field(default=None, description="Review count")

    source: SearchType = Field(default=SearchType.GMB, description="Search kind")
    platform: Optional[str] = Field(default=None, description="Platform name")
    place_id: Optional[str] = Field(
        default=None, description="Provider-issued place identifier, if sent"
    )

    enrichment: Optional[Enrichment] = Field(default=None)
    enrichment_status: EnrichmentStatus = Field(default=EnrichmentStatus.PENDING)
    classification: Optional[Classification] = Field(default=None)

    synthetic: bool = Field(default=False, description="Demo/mock record")
    search_query: Optional[str] = Field(default=None)
    search_location: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> str:
        """Require a non-blank name."""
        text = _clean_optional_str(v)
        if not text:
            raise ValueError("lead name is required")
        return text

    @field_validator(
        "address", "phone", "website", "email", "platform", "place_id",
        "search_query", "search_location",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Optional[str]:
        return _clean_optional_str(v)

    @model_validator(mode="after")
    def fill_email_from_enrichment(self) -> "Lead":
        if not self.email and self.enrichment is not None:
            self.email = self.enrichment.first_email
        return self

    @property
    def is_synthetic(self) -> bool:
        """Whether this is demo data that must never trigger a remote backup."""
        return self.synthetic or self.id.startswith(SYNTHETIC_ID_PREFIXES)

    @property
    def all_phones(self) -> Set[str]:
        phones = set(self.enrichment.phones) if self.enrichment else set()
        if self.phone:
            phones.add(self.phone)
        return phones

    @property
    def all_emails(self) -> Set[str]:
        emails = set(self.enrichment.emails) if self.enrichment else set()
        if self.email:
            emails.add(self.email.lower())
        return emails

    @classmethod
    def from_provider(
        cls,
        raw: Dict[str, Any],
        context: Optional["SearchContext"] = None,
    ) -> "Lead":
        """Build a lead from a raw discovery-provider record.

        Args:
            raw: Business record using the provider's field names.
            context: Search context the record was discovered under.

        Returns:
            Lead instance.
        """
        data: Dict[str, Any] = {
            "name": raw.get("name") or raw.get("title") or raw.get("business_name"),
            "address": raw.get("address"),
            "phone": raw.get("phone"),
            "website": raw.get("website") or raw.get("url"),
            "email": raw.get("email"),
            "rating": raw.get("rating"),
            "review_count": raw.get("review_count")
            or raw.get("reviewCount")
            or raw.get("reviews"),
            "platform": raw.get("platform"),
            "place_id": raw.get("place_id") or raw.get("placeId"),
            "synthetic": bool(raw.get("synthetic", False)),
        }
        if raw.get("id"):
            data["id"] = str(raw["id"])
        if raw.get("source") in (SearchType.GMB.value, SearchType.PLATFORM.value):
            data["source"] = raw["source"]
        elif context is not None:
            data["source"] = context.search_type
        if context is not None:
            data["search_query"] = context.query
            data["search_location"] = context.location
        if raw.get("enrichment"):
            data["enrichment"] = Enrichment.from_payload(raw["enrichment"])
        return cls(**data)


# ---------------------------------------------------------------------------
# Search and workflow state
# ---------------------------------------------------------------------------


class SearchContext(BaseModel):
    """Everything needed to re-run a search without asking the user again."""

    query: str = Field(..., description="Service or business keyword")
    location: str = Field(default="", description="Location text")
    search_type: SearchType = Field(default=SearchType.GMB)
    filters: Set[str] = Field(default_factory=set, description="Active filters")
    requested_count: int = Field(default=100, ge=1, description="Leads requested")

    @field_validator("query", "location", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> str:
        return str(v or "").strip()

    @field_serializer("filters")
    def serialize_filters(self, values: Set[str]) -> List[str]:
        return sorted(values)


class WorkflowState(BaseModel):
    """Persisted position in the dashboard workflow."""

    stage: WorkflowStage = Field(default=WorkflowStage.SEARCH)
    selected_lead_ids: List[str] = Field(default_factory=list)
    last_saved_at: Optional[datetime] = None
    last_local_save_at: Optional[datetime] = None
    last_remote_save_at: Optional[datetime] = None


class PersistenceRecord(BaseModel):
    """Snapshot written to each storage tier."""

    leads: List[Lead] = Field(default_factory=list)
    search_context: Optional[SearchContext] = None
    workflow: WorkflowState = Field(default_factory=WorkflowState)
    saved_at: datetime = Field(default_factory=utcnow)
    origin: SaveOrigin = Field(default=SaveOrigin.LOCAL_CACHE)
    credential_fingerprint: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.leads

    @property
    def has_real_leads(self) -> bool:
        """Whether at least one lead is not synthetic demo data."""
        return any(not lead.is_synthetic for lead in self.leads)


# ---------------------------------------------------------------------------
# Discovery stream events
# ---------------------------------------------------------------------------


class CoverageInfo(BaseModel):
    """Advisory coverage metadata; any field may be absent."""

    expanded_queries: Optional[int] = None
    completed_queries: Optional[int] = None
    estimated_remaining: Optional[int] = None
    page: Optional[int] = None
    estimated_pages: Optional[int] = None


class PartialBatch(BaseModel):
    """A batch of raw business records from the provider."""

    leads: List[Dict[str, Any]] = Field(default_factory=list)
    total: Optional[int] = None
    page: Optional[int] = None


class ProgressEvent(BaseModel):
    """Progress percentage plus optional coverage metadata."""

    progress: float = Field(default=0.0)
    coverage: Optional[CoverageInfo] = None


class TerminalEvent(BaseModel):
    """End-of-stream signal from the provider."""

    kind: TerminalKind = Field(default=TerminalKind.SUCCESS)
    total: Optional[int] = None
    error: Optional[str] = None


DiscoveryEvent = Union[PartialBatch, ProgressEvent, TerminalEvent]


# ---------------------------------------------------------------------------
# Outcomes surfaced to callers
# ---------------------------------------------------------------------------


class SearchOutcome(BaseModel):
    """Final result of one ingestion run."""

    kind: OutcomeKind
    run_token: int
    requested_count: int
    found_count: int = 0
    received_count: int = 0
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        """Hard failure: nothing usable was obtained."""
        return self.kind == OutcomeKind.FAILED

    @property
    def can_continue(self) -> bool:
        """Whether the caller may re-invoke the search in append mode."""
        return self.kind in (OutcomeKind.PARTIAL, OutcomeKind.INTERRUPTED)


class IngestionUpdate(BaseModel):
    """Progress snapshot yielded while a search streams in."""

    run_token: int
    status: ConnectionStatus
    progress: float = 0.0
    coverage: Optional[CoverageInfo] = None
    lead_count: int = 0
    attempt: int = 0
    outcome: Optional[SearchOutcome] = None


class SaveResult(BaseModel):
    """Result of a manual or periodic save."""

    local_saved: bool = False
    remote_saved: bool = False
    remote_error: Optional[str] = None
    saved_at: datetime = Field(default_factory=utcnow)

    @property
    def backed_up(self) -> bool:
        return self.remote_saved


class ResetResult(BaseModel):
    """Result of the destructive "clear all data" action."""

    local_cleared: bool = False
    remote_deleted: bool = False
    warning: Optional[str] = None
