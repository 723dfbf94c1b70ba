"""
Database helper functions — dialect-aware upserts and small coercions
shared by the connection store, the dispatcher and the credential store.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import LinkedExternalRecord

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def insert_for(session: AsyncSession, model: Any):
    """
    ``INSERT`` construct supporting ``on_conflict_do_*`` for the session's
    dialect (PostgreSQL in production, SQLite in tests).
    """
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


async def upsert_linked_record(
    session: AsyncSession,
    *,
    workspace_id: str,
    primary_id: str,
    connection_id: uuid.UUID,
    integration_type: str,
    external_id: str,
    external_url: Optional[str] = None,
) -> None:
    """
    Create the link for an external record, or fill in its URL if the
    link already exists.  The status of an existing link is left alone.
    """
    now = utcnow()
    values: Dict[str, Any] = {
        "link_id": uuid.uuid4(),
        "workspace_id": workspace_id,
        "primary_id": primary_id,
        "connection_id": connection_id,
        "integration_type": integration_type,
        "external_id": external_id,
        "external_url": external_url,
        "status": "active",
        "created_at": now,
        "updated_at": now,
    }
    stmt = insert_for(session, LinkedExternalRecord).values(**values)
    set_: Dict[str, Any] = {"updated_at": now}
    if external_url:
        set_["external_url"] = external_url
    stmt = stmt.on_conflict_do_update(
        index_elements=["primary_id", "connection_id", "external_id"],
        set_=set_,
    )
    await session.execute(stmt)
    logger.debug("Linked %s record %s to %s", integration_type, external_id, primary_id)
