"""
Pydantic schemas for events, hook results, cascade choices and API payloads.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Domain events
# ═══════════════════════════════════════════════════════════════════════════════

EVENT_POST_CREATED = "post.created"
EVENT_POST_STATUS_CHANGED = "post.status_changed"
EVENT_COMMENT_CREATED = "comment.created"
EVENT_CHANGELOG_PUBLISHED = "changelog.published"

ALL_EVENT_TYPES = [
    EVENT_POST_CREATED,
    EVENT_POST_STATUS_CHANGED,
    EVENT_COMMENT_CREATED,
    EVENT_CHANGELOG_PUBLISHED,
]


class EventActor(BaseModel):
    type: str = "user"  # "user" | "service"
    principal_id: Optional[str] = None
    email: Optional[str] = None


class EventData(BaseModel):
    """A domain event raised by a business operation (``post.created`` …)."""

    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    type: str
    timestamp: datetime = Field(default_factory=_utcnow)
    actor: EventActor = Field(default_factory=EventActor)
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def post(self) -> Dict[str, Any]:
        return self.data.get("post") or {}

    @property
    def primary_id(self) -> Optional[str]:
        """The internal record an external record created for this event links to."""
        return self.post.get("id")

    @property
    def board_id(self) -> Optional[str]:
        return self.post.get("boardId")

    @property
    def is_private(self) -> bool:
        comment = self.data.get("comment") or {}
        return bool(comment.get("isPrivate"))


# ═══════════════════════════════════════════════════════════════════════════════
# Hook handler results
# ═══════════════════════════════════════════════════════════════════════════════


class HookResult(BaseModel):
    """
    Outcome of delivering one event to one integration.

    ``success=True`` with no ``external_id`` means "nothing to do" or a plain
    notification; with ``external_id`` the caller persists a linked record.
    """

    success: bool
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    error: Optional[str] = None
    should_retry: bool = False

    @classmethod
    def ok(cls, external_id: Optional[str] = None, external_url: Optional[str] = None) -> "HookResult":
        return cls(success=True, external_id=external_id, external_url=external_url)

    @classmethod
    def failed(cls, error: str, should_retry: bool = False) -> "HookResult":
        return cls(success=False, error=error, should_retry=should_retry)


class ConnectionTestResult(BaseModel):
    ok: bool
    error: Optional[str] = None


class ArchiveResult(BaseModel):
    success: bool
    action: Optional[Literal["archived", "closed"]] = None
    error: Optional[str] = None


class TokenGrant(BaseModel):
    """Normalised result of a code exchange or token refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    external_workspace_id: Optional[str] = None
    external_workspace_name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Dispatch
# ═══════════════════════════════════════════════════════════════════════════════


class DeliveryOutcome(BaseModel):
    connection_id: str
    integration_type: str
    action_type: str
    success: bool
    attempts: int = 1
    external_id: Optional[str] = None
    error: Optional[str] = None
    should_retry: bool = False


class DispatchSummary(BaseModel):
    event_id: str
    event_type: str
    outcomes: List[DeliveryOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> List[DeliveryOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[DeliveryOutcome]:
        return [o for o in self.outcomes if not o.success]


# ═══════════════════════════════════════════════════════════════════════════════
# Cascade archive
# ═══════════════════════════════════════════════════════════════════════════════


class LinkedRecordView(BaseModel):
    link_id: str
    primary_id: str
    connection_id: Optional[str] = None
    integration_type: str
    external_id: str
    external_url: Optional[str] = None
    status: str
    connection_status: Optional[str] = None
    default_policy: Literal["archive", "nothing"] = "nothing"
    default_should_archive: bool = False


class CascadeChoice(BaseModel):
    link_id: str
    should_archive: bool


class CascadeResult(BaseModel):
    link_id: str
    integration_type: str
    external_id: str
    success: bool
    action: Optional[str] = None
    error: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════════
# API payloads
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectRequest(BaseModel):
    return_domain: str
    pre_auth_fields: Dict[str, str] = Field(default_factory=dict)


class ConnectResponse(BaseModel):
    state: str
    connect_url: str


class ConnectionView(BaseModel):
    connection_id: str
    integration_type: str
    status: str
    external_workspace_id: Optional[str] = None
    external_workspace_name: Optional[str] = None
    connected_by_principal_id: Optional[str] = None
    service_principal_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    error_count: int = 0
    connected_at: Optional[datetime] = None


class ConnectionUpdate(BaseModel):
    """Manual pause / resume, and connection settings such as ``onDelete``."""

    status: Optional[Literal["active", "paused"]] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class EventMappingInput(BaseModel):
    event_type: str
    action_type: str
    action_config: Dict[str, Any] = Field(default_factory=dict)
    filters: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class PlatformCredentialsInput(BaseModel):
    credentials: Dict[str, str]


class RaiseEventRequest(BaseModel):
    event: EventData


class CascadeRequest(BaseModel):
    choices: List[CascadeChoice] = Field(default_factory=list)
