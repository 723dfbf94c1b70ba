"""
CascadeArchiveOrchestrator — best-effort close of external records linked
to a primary record that is being deleted.

Two steps, driven by the deleting operation:

  • ``request_cascade_delete``  — what is linked, and what the connection's
                                  default policy suggests doing with it
  • ``execute_cascade_delete``  — archive the links the caller chose, all in
                                  parallel, reporting per link

The primary deletion never waits on, or fails because of, this module.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import utcnow
from database.models import IntegrationConnection, LinkedExternalRecord
from integrations.base import ArchiveContext
from integrations.errors import IntegrationError
from integrations.registry import IntegrationRegistry
from integrations.store import ConnectionStore
from utils.schemas import ArchiveResult, CascadeChoice, CascadeResult, LinkedRecordView

logger = logging.getLogger(__name__)

ON_DELETE_KEY = "onDelete"
ON_DELETE_POLICIES = ("archive", "nothing")


def default_policy(connection: Optional[IntegrationConnection]) -> str:
    if connection is None:
        return "nothing"
    policy = (connection.config or {}).get(ON_DELETE_KEY, "nothing")
    return policy if policy in ON_DELETE_POLICIES else "nothing"


def default_choices(views: Sequence[LinkedRecordView]) -> List[CascadeChoice]:
    """Pre-fill the caller's choices from each connection's default policy."""
    return [CascadeChoice(link_id=v.link_id, should_archive=v.default_should_archive) for v in views]


def _normalize_link_id(link_id: str) -> str:
    try:
        return str(uuid.UUID(link_id))
    except ValueError:
        return link_id


def _unresolved(link_id: str, error: str) -> CascadeResult:
    return CascadeResult(link_id=link_id, integration_type="", external_id="", success=False, error=error)


class CascadeArchiveOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ConnectionStore,
        registry: IntegrationRegistry,
        timeout_seconds: float = 30.0,
    ):
        self._session_factory = session_factory
        self._store = store
        self._registry = registry
        self._timeout = timeout_seconds

    default_choices = staticmethod(default_choices)

    async def request_cascade_delete(self, workspace_id: str, primary_id: str) -> List[LinkedRecordView]:
        rows = await self._load(
            LinkedExternalRecord.workspace_id == workspace_id,
            LinkedExternalRecord.primary_id == primary_id,
            LinkedExternalRecord.status == "active",
        )
        views = []
        for link, connection in rows:
            policy = default_policy(connection)
            connection_status = connection.status if connection is not None else None
            views.append(
                LinkedRecordView(
                    link_id=str(link.link_id),
                    primary_id=link.primary_id,
                    connection_id=str(link.connection_id) if link.connection_id else None,
                    integration_type=link.integration_type,
                    external_id=link.external_id,
                    external_url=link.external_url,
                    status=link.status,
                    connection_status=connection_status,
                    default_policy=policy,
                    default_should_archive=policy == "archive" and connection_status == "active",
                )
            )
        return views

    async def execute_cascade_delete(
        self, workspace_id: str, choices: Sequence[CascadeChoice]
    ) -> List[CascadeResult]:
        requested: List[str] = []
        link_ids = []
        for choice in choices:
            if not choice.should_archive or choice.link_id in requested:
                continue
            requested.append(choice.link_id)
            try:
                link_ids.append(uuid.UUID(choice.link_id))
            except ValueError:
                logger.warning("Malformed link id %r in cascade request", choice.link_id)
        if not requested:
            return []

        rows: List[Tuple[LinkedExternalRecord, Optional[IntegrationConnection]]] = []
        if link_ids:
            try:
                rows = await self._load(
                    LinkedExternalRecord.workspace_id == workspace_id,
                    LinkedExternalRecord.link_id.in_(link_ids),
                )
            except SQLAlchemyError:
                logger.exception("Loading linked records for cascade failed")
                return [_unresolved(link_id, "Could not load linked record") for link_id in requested]

        outcomes = await asyncio.gather(
            *[self._archive_one(link, connection) for link, connection in rows],
            return_exceptions=True,
        )

        results: List[CascadeResult] = []
        for (link, _connection), outcome in zip(rows, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Archive of %s %s crashed: %s", link.integration_type, link.external_id, outcome)
                outcome = ArchiveResult(success=False, error=str(outcome) or outcome.__class__.__name__)
            await self._persist(link, outcome)
            results.append(
                CascadeResult(
                    link_id=str(link.link_id),
                    integration_type=link.integration_type,
                    external_id=link.external_id,
                    success=outcome.success,
                    action=outcome.action,
                    error=outcome.error,
                )
            )

        found = {_normalize_link_id(str(link.link_id)) for link, _connection in rows}
        for link_id in requested:
            if _normalize_link_id(link_id) not in found:
                results.append(_unresolved(link_id, "Unknown link"))

        logger.info(
            "Cascade archive in workspace %s: %d succeeded, %d failed",
            workspace_id,
            sum(1 for r in results if r.success),
            sum(1 for r in results if not r.success),
        )
        return results

    # ── Internals ───────────────────────────────────────────────────────

    async def _load(self, *criteria) -> List[Tuple[LinkedExternalRecord, Optional[IntegrationConnection]]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LinkedExternalRecord, IntegrationConnection)
                .outerjoin(
                    IntegrationConnection,
                    LinkedExternalRecord.connection_id == IntegrationConnection.connection_id,
                )
                .where(*criteria)
                .order_by(LinkedExternalRecord.created_at)
            )
            return [(link, connection) for link, connection in result.all()]

    async def _archive_one(
        self, link: LinkedExternalRecord, connection: Optional[IntegrationConnection]
    ) -> ArchiveResult:
        if connection is None:
            return ArchiveResult(success=False, error="Integration no longer connected")
        if connection.status != "active":
            return ArchiveResult(success=False, error=f"Integration is {connection.status}")

        try:
            access_token = await self._store.get_fresh_access_token(connection)
            ctx = ArchiveContext(
                external_id=link.external_id,
                access_token=access_token,
                external_url=link.external_url,
                config=dict(connection.config or {}),
            )
            return await asyncio.wait_for(
                self._registry.archive(link.integration_type, ctx), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            return ArchiveResult(success=False, error="Request timeout")
        except IntegrationError as exc:
            return ArchiveResult(success=False, error=str(exc))

    async def _persist(self, link: LinkedExternalRecord, outcome: ArchiveResult) -> None:
        values: Dict[str, object] = {"updated_at": utcnow()}
        if outcome.success:
            values.update(status=outcome.action or "archived", last_error=None)
        else:
            values.update(status="error", last_error=outcome.error)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(LinkedExternalRecord)
                    .where(LinkedExternalRecord.link_id == link.link_id)
                    .values(**values)
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Saving cascade result for link %s failed", link.link_id)
