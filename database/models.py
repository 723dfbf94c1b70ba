"""
SQLAlchemy ORM models for integration connections, event mappings,
linked external records and platform credentials.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Principal(Base):
    """A human member or a service identity that actions are attributed to."""

    __tablename__ = "principals"

    principal_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    principal_type = Column(String(16), nullable=False, default="user")
    display_name = Column(String(128))
    service_metadata = Column(JsonType, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"
    __table_args__ = (
        UniqueConstraint("workspace_id", "integration_type", name="uq_connection_workspace_type"),
    )

    connection_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False)
    integration_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="active")
    secrets = Column(Text, nullable=False)
    config = Column(JsonType, nullable=False, default=dict)
    external_workspace_id = Column(String(256))
    external_workspace_name = Column(String(256))
    connected_by_principal_id = Column(String(64))
    service_principal_id = Column(Uuid(as_uuid=True), ForeignKey("principals.principal_id"))
    last_error = Column(Text)
    last_error_at = Column(DateTime(timezone=True))
    error_count = Column(Integer, nullable=False, default=0)
    connected_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    event_mappings = relationship("EventMapping", back_populates="connection")


class EventMapping(Base):
    __tablename__ = "integration_event_mappings"
    __table_args__ = (
        UniqueConstraint("connection_id", "event_type", "action_type", name="uq_mapping_event_action"),
    )

    mapping_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_connections.connection_id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type = Column(String(64), nullable=False)
    action_type = Column(String(64), nullable=False)
    action_config = Column(JsonType, default=dict)
    filters = Column(JsonType, default=dict)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    connection = relationship("IntegrationConnection", back_populates="event_mappings")


class LinkedExternalRecord(Base):
    __tablename__ = "linked_external_records"
    __table_args__ = (
        UniqueConstraint("primary_id", "connection_id", "external_id", name="uq_link_primary_connection_external"),
    )

    link_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False)
    primary_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integration_connections.connection_id", ondelete="SET NULL"),
        nullable=True,
    )
    integration_type = Column(String(32), nullable=False)
    external_id = Column(String(256), nullable=False)
    external_url = Column(Text)
    status = Column(String(16), nullable=False, default="active")
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class PlatformCredential(Base):
    """Operator-configured OAuth app credentials, stored encrypted."""

    __tablename__ = "platform_credentials"

    integration_type = Column(String(32), primary_key=True)
    secrets = Column(Text, nullable=False)
    configured_by_principal_id = Column(String(64))
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
