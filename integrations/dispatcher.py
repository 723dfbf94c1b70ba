"""
EventDispatcher — fans a domain event out to every interested integration.

Flow for one event:

  1. resolve  — enabled mappings for the event type on active connections
  2. deliver  — all deliveries in parallel; each gets a fresh token, runs
                the handler under a timeout and retries retryable failures
                with exponential backoff
  3. settle   — success clears the connection's health counters and links
                any external record created; a final failure is recorded
                on the connection exactly once

Nothing here propagates to the producer of the event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import upsert_linked_record
from database.models import EventMapping, IntegrationConnection
from integrations.base import BaseIntegration, IntegrationContext, is_retryable_error
from integrations.errors import DecryptionError, IntegrationNotConnectedError, TokenRefreshError
from integrations.registry import IntegrationRegistry
from integrations.store import ConnectionStore
from utils.schemas import EVENT_COMMENT_CREATED, DeliveryOutcome, DispatchSummary, EventData, HookResult

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ConnectionStore,
        registry: IntegrationRegistry,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        delivery_timeout_seconds: float = 30.0,
    ):
        self._session_factory = session_factory
        self._store = store
        self._registry = registry
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._delivery_timeout = delivery_timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    # ── Entry points ────────────────────────────────────────────────────

    def raise_event(self, workspace_id: str, event: EventData) -> asyncio.Task:
        """Fire-and-forget: schedule ``dispatch`` and return immediately."""
        task = asyncio.create_task(self.dispatch(workspace_id, event), name=f"dispatch-{event.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every event raised so far to finish dispatching."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def dispatch(self, workspace_id: str, event: EventData) -> DispatchSummary:
        summary = DispatchSummary(event_id=event.id, event_type=event.type)
        try:
            targets = await self._resolve(workspace_id, event)
        except Exception:
            logger.exception("Resolving hooks for %s (%s) failed", event.type, event.id)
            return summary
        if not targets:
            logger.debug("No hooks for %s in workspace %s", event.type, workspace_id)
            return summary

        results = await asyncio.gather(
            *[self._deliver(workspace_id, event, mapping, connection) for mapping, connection in targets],
            return_exceptions=True,
        )

        for (mapping, connection), result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Delivery of %s to %s crashed: %s", event.type, connection.integration_type, result
                )
                result = DeliveryOutcome(
                    connection_id=str(connection.connection_id),
                    integration_type=connection.integration_type,
                    action_type=mapping.action_type,
                    success=False,
                    error=str(result) or result.__class__.__name__,
                )
            summary.outcomes.append(result)

        logger.info(
            "Dispatched %s (%s): %d succeeded, %d failed",
            event.type,
            event.id,
            len(summary.succeeded),
            len(summary.failed),
        )
        return summary

    # ── Resolve ─────────────────────────────────────────────────────────

    async def _resolve(
        self, workspace_id: str, event: EventData
    ) -> List[Tuple[EventMapping, IntegrationConnection]]:
        if event.type == EVENT_COMMENT_CREATED and event.is_private:
            logger.debug("Skipping private comment event %s", event.id)
            return []

        async with self._session_factory() as session:
            result = await session.execute(
                select(EventMapping, IntegrationConnection)
                .join(IntegrationConnection, EventMapping.connection_id == IntegrationConnection.connection_id)
                .where(
                    IntegrationConnection.workspace_id == workspace_id,
                    IntegrationConnection.status == "active",
                    EventMapping.event_type == event.type,
                    EventMapping.enabled.is_(True),
                )
            )
            rows = result.all()

        targets = []
        for mapping, connection in rows:
            board_ids = (mapping.filters or {}).get("boardIds") or []
            if board_ids and event.board_id not in board_ids:
                continue
            targets.append((mapping, connection))
        return targets

    # ── Deliver ─────────────────────────────────────────────────────────

    async def _deliver(
        self,
        workspace_id: str,
        event: EventData,
        mapping: EventMapping,
        connection: IntegrationConnection,
    ) -> DeliveryOutcome:
        integration = self._registry.get(connection.integration_type)
        attempts = 0
        if integration is None:
            result = HookResult.failed(f"Unknown integration: {connection.integration_type}")
        else:
            while True:
                attempts += 1
                result = await self._attempt(workspace_id, event, mapping, connection, integration)
                if result.success or not result.should_retry or attempts >= self._max_attempts:
                    break
                delay = self._backoff_base * (2 ** (attempts - 1))
                logger.info(
                    "Retrying %s delivery of %s in %.1fs (attempt %d/%d): %s",
                    connection.integration_type,
                    event.type,
                    delay,
                    attempts + 1,
                    self._max_attempts,
                    result.error,
                )
                await asyncio.sleep(delay)

        await self._settle(workspace_id, event, connection, result)
        return DeliveryOutcome(
            connection_id=str(connection.connection_id),
            integration_type=connection.integration_type,
            action_type=mapping.action_type,
            success=result.success,
            attempts=max(attempts, 1),
            external_id=result.external_id,
            error=result.error,
            should_retry=result.should_retry,
        )

    async def _attempt(
        self,
        workspace_id: str,
        event: EventData,
        mapping: EventMapping,
        connection: IntegrationConnection,
        integration: BaseIntegration,
    ) -> HookResult:
        try:
            access_token = await self._store.get_fresh_access_token(connection)
        except TokenRefreshError as exc:
            return HookResult.failed(f"Token refresh failed: {exc}", should_retry=exc.retryable)
        except IntegrationNotConnectedError as exc:
            return HookResult.failed(str(exc))
        except DecryptionError:
            logger.error("Stored secrets for %s connection %s could not be decrypted",
                         connection.integration_type, connection.connection_id)
            return HookResult.failed("Stored credentials could not be decrypted")
        except Exception as exc:
            logger.exception("Fetching a token for %s connection %s failed",
                             connection.integration_type, connection.connection_id)
            return HookResult.failed(
                f"Token fetch failed: {str(exc) or exc.__class__.__name__}", should_retry=is_retryable_error(exc)
            )

        ctx = IntegrationContext(
            access_token=access_token,
            config=dict(connection.config or {}),
            external_workspace_id=connection.external_workspace_id,
            workspace_id=workspace_id,
        )
        target = dict(mapping.action_config or {})
        try:
            return await asyncio.wait_for(integration.run(event, target, ctx), timeout=self._delivery_timeout)
        except asyncio.TimeoutError:
            return HookResult.failed("Delivery timeout", should_retry=True)
        except Exception as exc:
            logger.exception("%s handler raised on %s", connection.integration_type, event.type)
            return HookResult.failed(str(exc) or exc.__class__.__name__, should_retry=is_retryable_error(exc))

    # ── Settle ──────────────────────────────────────────────────────────

    async def _settle(
        self,
        workspace_id: str,
        event: EventData,
        connection: IntegrationConnection,
        result: HookResult,
    ) -> None:
        if not result.success:
            await self._store.record_delivery_error(connection, result.error or "Delivery failed")
            return

        await self._store.record_delivery_success(connection)
        primary_id: Optional[str] = event.primary_id
        if result.external_id and primary_id:
            async with self._session_factory() as session:
                await upsert_linked_record(
                    session,
                    workspace_id=workspace_id,
                    primary_id=primary_id,
                    connection_id=connection.connection_id,
                    integration_type=connection.integration_type,
                    external_id=result.external_id,
                    external_url=result.external_url,
                )
                await session.commit()
