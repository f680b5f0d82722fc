"""Data models for the incident routing engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IncidentStatus(str, Enum):
    """Closed set of incident states."""

    OPEN = "Open"
    HOLD = "Hold"
    IN_PROGRESS = "In-Progress"
    CLOSED = "Closed"
    PENDING_ASSIGNMENT = "Pending-Assignment"
    PENDING_TIER2_ASSIGNMENT = "Pending-Tier2-Assignment"


# Statuses that count against a technician's capacity.
ACTIVE_STATUSES = (IncidentStatus.OPEN, IncidentStatus.HOLD, IncidentStatus.IN_PROGRESS)
PENDING_STATUSES = (IncidentStatus.PENDING_ASSIGNMENT, IncidentStatus.PENDING_TIER2_ASSIGNMENT)


class IncidentPriority(str, Enum):
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class Tier(str, Enum):
    """Technician support tier. Stored labels are compared case-insensitively."""

    TIER1 = "tier1"
    TIER2 = "tier2"

    @classmethod
    def parse(cls, label: Optional[str]) -> Optional["Tier"]:
        """Normalise a free-text tier label ('Tier1', 'tier1', ' TIER2 ')."""
        if not label:
            return None
        try:
            return cls(label.strip().lower())
        except ValueError:
            return None


# --- Category hierarchy: MainCategory (team) -> SubCategory (skill domain) -> CategoryItem ---


class MainCategory(BaseModel):
    """Top of the hierarchy; one main category is one team."""

    id: str = Field(default_factory=lambda: uuid4().hex, description="Team identifier")
    code: str = Field(..., max_length=20)
    name: str = Field(..., max_length=100, description="Team name")


class SubCategory(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    code: str = Field(..., max_length=20)
    name: str = Field(..., max_length=100)
    main_category: Optional[MainCategory] = None


class CategoryItem(BaseModel):
    """Leaf of the hierarchy; its name is the incident category label."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    code: str = Field(..., max_length=20)
    name: str = Field(..., max_length=150)
    sub_category: Optional[SubCategory] = None


class CategoryPath(NamedTuple):
    """A resolved category label."""

    team_id: str
    team_name: str
    sub_category: str
    category: str

    @property
    def team_refs(self) -> tuple[str, ...]:
        return tuple(ref for ref in (self.team_id, self.team_name) if ref)


# --- People ---


class Technician(BaseModel):
    """A technician with up to four skill tags and a support tier."""

    technician_id: str = Field(..., description="Service number")
    name: str = Field(default="", description="Display name")
    team: str = Field(default="", description="Team name (or team id, data is inconsistent)")
    team_id: str = Field(default="", description="Team identifier")
    tier: str = Field(default="Tier1", description="Tier1 | Tier2 (case-insensitive)")
    skills: list[str] = Field(default_factory=list, max_length=4, description="Category, sub-category or team names")
    active: bool = Field(default=False, description="Signed in; owned by the session layer")
    order: int = Field(default=0, description="Ordering key for round-robin lists")


class TeamAdmin(BaseModel):
    """Terminal escalation target for a team."""

    admin_id: str = Field(..., description="Service number")
    user_name: str = Field(default="")
    team_id: str = Field(default="")
    team_name: str = Field(default="")
    active: bool = Field(default=True)


# --- Incidents ---


class Incident(BaseModel):
    """An IT incident as stored by the ticketing subsystem."""

    incident_number: str = Field(..., description="INYYYY.MM.DD.NNNN")
    informant: str
    location: str
    category: str = Field(..., description="CategoryItem name, matched exactly")
    handler: Optional[str] = Field(None, description="Assigned technician or team admin")
    status: IncidentStatus = IncidentStatus.OPEN
    priority: IncidentPriority = IncidentPriority.MEDIUM
    updated_by: str = ""
    description: str = ""
    notify_informant: bool = False
    attachment_filename: str = ""
    attachment_original_name: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class IncidentCreate(BaseModel):
    """Payload for a new incident."""

    informant: str
    location: str
    category: str
    priority: IncidentPriority = IncidentPriority.MEDIUM
    updated_by: Optional[str] = None
    description: str = ""
    notify_informant: bool = False
    attachment_filename: str = ""
    attachment_original_name: str = ""


class IncidentUpdate(BaseModel):
    """Partial update. Only fields explicitly set are applied."""

    category: Optional[str] = None
    status: Optional[IncidentStatus] = None
    priority: Optional[IncidentPriority] = None
    handler: Optional[str] = None
    location: Optional[str] = None
    updated_by: Optional[str] = None
    description: Optional[str] = None
    notify_informant: Optional[bool] = None
    attachment_filename: Optional[str] = None
    attachment_original_name: Optional[str] = None
    assign_tier2: bool = Field(default=False, description="Escalate to a Tier2 technician of the same team")
    assign_team_admin: bool = Field(default=False, description="Escalate to the current handler's team admin")

    def changes(self) -> dict:
        """Explicitly-set incident fields, without the escalation flags."""
        data = self.model_dump(exclude_unset=True)
        data.pop("assign_tier2", None)
        data.pop("assign_team_admin", None)
        return data


class IncidentHistory(BaseModel):
    """Append-only audit entry."""

    incident_number: str
    status: IncidentStatus
    assigned_to: str = ""
    updated_by: str = ""
    updated_at: datetime = Field(default_factory=utcnow)
    comment: str = ""
    category: str = ""
    location: str = ""
    attachment: str = ""
    attachment_original_name: str = ""


# --- Notifications ---


class EventKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ASSIGNED = "assigned"
    TRANSFERRED = "transferred"
    CLOSED = "closed"


class NotificationEvent(BaseModel):
    """One event handed to a notification sink."""

    kind: EventKind
    incident: Incident
    message: str = ""
    recipients: list[str] = Field(default_factory=list, description="Technician / informant ids")
    broadcast: bool = Field(default=True, description="Also deliver to every connected client")


class NotificationSink(Protocol):
    """Fire-and-forget delivery of incident events."""

    def deliver(self, event: NotificationEvent) -> None:
        ...
