"""
ConnectionStore — persistence for integration connections.

This is the single interface the dispatcher, the cascade orchestrator and
the routes use to save, read, refresh and remove a workspace's connection
to a third-party service.  Secrets never leave this module encrypted-side
up: callers get decrypted tokens only through ``get_fresh_access_token``
and ``get_secrets``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import insert_for, utcnow
from database.models import EventMapping, IntegrationConnection, LinkedExternalRecord, Principal
from integrations.encryption import PURPOSE_INTEGRATION_TOKENS, SecretCipher
from integrations.errors import (
    ConfigurationError,
    IntegrationError,
    IntegrationNotConnectedError,
    TokenRefreshError,
)
from integrations.platform_credentials import PlatformCredentialStore
from integrations.registry import IntegrationRegistry
from utils.schemas import ConnectionView, EventMappingInput

logger = logging.getLogger(__name__)

TOKEN_EXPIRES_AT = "tokenExpiresAt"
MANUAL_STATUSES = ("active", "paused")


def parse_expires_at(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring malformed %s value %r", TOKEN_EXPIRES_AT, value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ConnectionStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: SecretCipher,
        registry: IntegrationRegistry,
        credentials: PlatformCredentialStore,
        refresh_buffer_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._registry = registry
        self._credentials = credentials
        self._refresh_buffer = timedelta(seconds=refresh_buffer_seconds)
        self._clock = clock
        # entries vanish once no refresh holds or awaits the lock
        self._refresh_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ── Secrets ─────────────────────────────────────────────────────────

    def get_secrets(self, connection: IntegrationConnection) -> Dict[str, Any]:
        """Decrypted ``{"accessToken", "refreshToken"?}``; raises DecryptionError."""
        return self._cipher.decrypt_json(connection.secrets, PURPOSE_INTEGRATION_TOKENS)

    def _encrypt_secrets(self, access_token: str, refresh_token: Optional[str]) -> str:
        secrets = {"accessToken": access_token}
        if refresh_token:
            secrets["refreshToken"] = refresh_token
        return self._cipher.encrypt_json(secrets, PURPOSE_INTEGRATION_TOKENS)

    def _expires_at(self, expires_in: Optional[int]) -> Optional[str]:
        if not expires_in:
            return None
        return (self._clock() + timedelta(seconds=int(expires_in))).isoformat()

    # ── Save (upsert on connect / reconnect) ────────────────────────────

    async def save_connection(
        self,
        workspace_id: str,
        integration_type: str,
        principal_id: Optional[str],
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        config: Optional[Dict[str, Any]] = None,
        external_workspace_id: Optional[str] = None,
        external_workspace_name: Optional[str] = None,
    ) -> IntegrationConnection:
        """
        Store a new connection or replace the tokens of the existing one.

        The row is keyed by (workspace, type); a reconnect keeps the
        connection id and service principal, merges config and resets the
        health counters.
        """
        integration = self._registry.require(integration_type)
        now = self._clock()
        secrets = self._encrypt_secrets(access_token, refresh_token)

        async with self._session_factory() as session:
            existing = await self._select(session, workspace_id, integration_type)

            merged = dict(existing.config or {}) if existing is not None else {}
            merged.update(config or {})
            expires_at = self._expires_at(expires_in)
            if expires_at:
                merged[TOKEN_EXPIRES_AT] = expires_at
            else:
                merged.pop(TOKEN_EXPIRES_AT, None)

            service_principal_id = existing.service_principal_id if existing is not None else None
            if service_principal_id is None:
                service_principal_id = await self._provision_service_principal(
                    session, workspace_id, integration_type, integration.display_name
                )

            values = {
                "connection_id": uuid.uuid4(),
                "workspace_id": workspace_id,
                "integration_type": integration_type,
                "status": "active",
                "secrets": secrets,
                "config": merged,
                "external_workspace_id": external_workspace_id,
                "external_workspace_name": external_workspace_name,
                "connected_by_principal_id": principal_id,
                "service_principal_id": service_principal_id,
                "last_error": None,
                "last_error_at": None,
                "error_count": 0,
                "connected_at": now,
                "updated_at": now,
            }
            stmt = insert_for(session, IntegrationConnection).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["workspace_id", "integration_type"],
                set_={
                    "status": "active",
                    "secrets": secrets,
                    "config": merged,
                    "external_workspace_id": external_workspace_id,
                    "external_workspace_name": external_workspace_name,
                    "connected_by_principal_id": principal_id,
                    "service_principal_id": func.coalesce(
                        IntegrationConnection.service_principal_id,
                        stmt.excluded.service_principal_id,
                    ),
                    "last_error": None,
                    "last_error_at": None,
                    "error_count": 0,
                    "connected_at": now,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            await session.commit()

            saved = await self._select(session, workspace_id, integration_type)

        logger.info(
            "%s %s connection for workspace %s",
            "Updated" if existing is not None else "Created",
            integration_type,
            workspace_id,
        )
        return saved

    async def _provision_service_principal(
        self,
        session: AsyncSession,
        workspace_id: str,
        integration_type: str,
        display_name: str,
    ) -> uuid.UUID:
        principal = Principal(
            principal_id=uuid.uuid4(),
            workspace_id=workspace_id,
            principal_type="service",
            display_name=f"{display_name} integration",
            service_metadata={"kind": "integration", "integrationType": integration_type},
        )
        session.add(principal)
        await session.flush()
        logger.info("Provisioned service principal for %s in workspace %s", integration_type, workspace_id)
        return principal.principal_id

    # ── Read ────────────────────────────────────────────────────────────

    async def _select(
        self, session: AsyncSession, workspace_id: str, integration_type: str
    ) -> Optional[IntegrationConnection]:
        result = await session.execute(
            select(IntegrationConnection)
            .where(
                IntegrationConnection.workspace_id == workspace_id,
                IntegrationConnection.integration_type == integration_type,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_connection(self, workspace_id: str, integration_type: str) -> Optional[IntegrationConnection]:
        async with self._session_factory() as session:
            return await self._select(session, workspace_id, integration_type)

    async def require_connection(self, workspace_id: str, integration_type: str) -> IntegrationConnection:
        connection = await self.get_connection(workspace_id, integration_type)
        if connection is None:
            raise IntegrationNotConnectedError(workspace_id, integration_type)
        return connection

    async def list_connections(self, workspace_id: str) -> List[ConnectionView]:
        """Connection metadata for a workspace, without secrets."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationConnection)
                .where(IntegrationConnection.workspace_id == workspace_id)
                .order_by(IntegrationConnection.integration_type)
            )
            rows = result.scalars().all()
        return [self.to_view(row) for row in rows]

    @staticmethod
    def to_view(connection: IntegrationConnection) -> ConnectionView:
        return ConnectionView(
            connection_id=str(connection.connection_id),
            integration_type=connection.integration_type,
            status=connection.status,
            external_workspace_id=connection.external_workspace_id,
            external_workspace_name=connection.external_workspace_name,
            connected_by_principal_id=connection.connected_by_principal_id,
            service_principal_id=str(connection.service_principal_id) if connection.service_principal_id else None,
            config=dict(connection.config or {}),
            last_error=connection.last_error,
            last_error_at=connection.last_error_at,
            error_count=connection.error_count or 0,
            connected_at=connection.connected_at,
        )

    # ── Token refresh ───────────────────────────────────────────────────

    def _needs_refresh(self, config: Optional[Dict[str, Any]], secrets: Dict[str, Any]) -> bool:
        if not secrets.get("refreshToken"):
            return False
        expires_at = parse_expires_at((config or {}).get(TOKEN_EXPIRES_AT))
        if expires_at is None:
            return False
        return self._clock() >= expires_at - self._refresh_buffer

    async def get_fresh_access_token(self, connection: IntegrationConnection) -> str:
        """
        Return a usable access token, refreshing it first when it is within
        the refresh buffer of expiry.

        May write to the database: a refresh persists the new token pair and
        expiry, and ``connection`` is updated in place.  Concurrent callers
        for the same connection share one refresh.
        """
        secrets = self.get_secrets(connection)
        if not self._needs_refresh(connection.config, secrets):
            return secrets["accessToken"]

        key = str(connection.connection_id)
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[key] = lock

        async with lock:
            async with self._session_factory() as session:
                row = await session.get(IntegrationConnection, connection.connection_id, populate_existing=True)
                if row is None:
                    raise IntegrationNotConnectedError(connection.workspace_id, connection.integration_type)

                secrets = self.get_secrets(row)
                if not self._needs_refresh(row.config, secrets):
                    # another caller refreshed while we waited
                    self._sync(connection, row)
                    return secrets["accessToken"]

                integration = self._registry.require(row.integration_type)
                credentials = await self._credentials.get(row.integration_type)
                if not credentials:
                    raise TokenRefreshError(
                        f"Platform credentials not configured for {row.integration_type}", retryable=False
                    )

                grant = await integration.refresh_access_token(secrets["refreshToken"], credentials, row.config)

                new_config = dict(row.config or {})
                expires_at = self._expires_at(grant.expires_in)
                if expires_at:
                    new_config[TOKEN_EXPIRES_AT] = expires_at
                else:
                    new_config.pop(TOKEN_EXPIRES_AT, None)

                row.secrets = self._encrypt_secrets(
                    grant.access_token, grant.refresh_token or secrets["refreshToken"]
                )
                row.config = new_config
                row.updated_at = self._clock()
                await session.commit()
                self._sync(connection, row)

        logger.info("Refreshed %s token for workspace %s", connection.integration_type, connection.workspace_id)
        return grant.access_token

    @staticmethod
    def _sync(target: IntegrationConnection, source: IntegrationConnection) -> None:
        if target is source:
            return
        target.secrets = source.secrets
        target.config = dict(source.config or {})
        target.updated_at = source.updated_at

    # ── Health counters ─────────────────────────────────────────────────

    async def record_delivery_error(self, connection: IntegrationConnection, error: str) -> None:
        """Atomically bump the error counter; status is left unchanged."""
        async with self._session_factory() as session:
            await session.execute(
                update(IntegrationConnection)
                .where(IntegrationConnection.connection_id == connection.connection_id)
                .values(
                    error_count=IntegrationConnection.error_count + 1,
                    last_error=(error or "Unknown error")[:2000],
                    last_error_at=self._clock(),
                )
            )
            await session.commit()
        logger.warning(
            "Delivery error on %s connection %s: %s",
            connection.integration_type,
            connection.connection_id,
            error,
        )

    async def record_delivery_success(self, connection: IntegrationConnection) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(IntegrationConnection)
                .where(
                    IntegrationConnection.connection_id == connection.connection_id,
                    or_(IntegrationConnection.error_count != 0, IntegrationConnection.last_error.is_not(None)),
                )
                .values(error_count=0, last_error=None, last_error_at=None)
            )
            await session.commit()

    # ── Manual status / config ──────────────────────────────────────────

    async def update_connection(
        self,
        workspace_id: str,
        integration_type: str,
        status: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> IntegrationConnection:
        if status is not None and status not in MANUAL_STATUSES:
            raise ConfigurationError(f"Status must be one of {', '.join(MANUAL_STATUSES)}")
        async with self._session_factory() as session:
            row = await self._select(session, workspace_id, integration_type)
            if row is None:
                raise IntegrationNotConnectedError(workspace_id, integration_type)
            if status is not None:
                row.status = status
            if config:
                merged = dict(row.config or {})
                # token bookkeeping is owned by the store
                merged.update({k: v for k, v in config.items() if k != TOKEN_EXPIRES_AT})
                row.config = merged
            row.updated_at = self._clock()
            await session.commit()
        logger.info("Updated %s connection for workspace %s (status=%s)", integration_type, workspace_id, row.status)
        return row

    async def set_status(self, workspace_id: str, integration_type: str, status: str) -> IntegrationConnection:
        """Manual pause / resume."""
        return await self.update_connection(workspace_id, integration_type, status=status)

    # ── Event mappings ──────────────────────────────────────────────────

    async def set_event_mapping(
        self, workspace_id: str, integration_type: str, mapping: EventMappingInput
    ) -> EventMapping:
        integration = self._registry.require(integration_type)
        if not integration.handles(mapping.event_type):
            raise ConfigurationError(f"{integration_type} does not handle {mapping.event_type}")

        now = self._clock()
        async with self._session_factory() as session:
            connection = await self._select(session, workspace_id, integration_type)
            if connection is None:
                raise IntegrationNotConnectedError(workspace_id, integration_type)

            stmt = insert_for(session, EventMapping).values(
                mapping_id=uuid.uuid4(),
                connection_id=connection.connection_id,
                event_type=mapping.event_type,
                action_type=mapping.action_type,
                action_config=dict(mapping.action_config),
                filters=dict(mapping.filters),
                enabled=mapping.enabled,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["connection_id", "event_type", "action_type"],
                set_={
                    "action_config": dict(mapping.action_config),
                    "filters": dict(mapping.filters),
                    "enabled": mapping.enabled,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(EventMapping)
                .where(
                    EventMapping.connection_id == connection.connection_id,
                    EventMapping.event_type == mapping.event_type,
                    EventMapping.action_type == mapping.action_type,
                )
                .execution_options(populate_existing=True)
            )
            return result.scalar_one()

    async def list_event_mappings(self, workspace_id: str, integration_type: str) -> List[EventMapping]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EventMapping)
                .join(IntegrationConnection, EventMapping.connection_id == IntegrationConnection.connection_id)
                .where(
                    IntegrationConnection.workspace_id == workspace_id,
                    IntegrationConnection.integration_type == integration_type,
                )
                .order_by(EventMapping.event_type, EventMapping.action_type)
            )
            return list(result.scalars().all())

    # ── Disconnect ──────────────────────────────────────────────────────

    async def disconnect(self, workspace_id: str, integration_type: str) -> bool:
        """
        Revoke (best effort) and remove a connection.

        Idempotent: returns False when nothing was connected.  Mappings go
        with the connection; linked records stay but lose their connection.
        """
        connection = await self.get_connection(workspace_id, integration_type)
        if connection is None:
            return False

        await self._revoke(connection)

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(EventMapping).where(EventMapping.connection_id == connection.connection_id)
                )
                await session.execute(
                    update(LinkedExternalRecord)
                    .where(LinkedExternalRecord.connection_id == connection.connection_id)
                    .values(connection_id=None)
                )
                result = await session.execute(
                    delete(IntegrationConnection).where(
                        IntegrationConnection.connection_id == connection.connection_id
                    )
                )

        logger.info("Disconnected %s for workspace %s", integration_type, workspace_id)
        return result.rowcount > 0

    async def _revoke(self, connection: IntegrationConnection) -> None:
        integration = self._registry.get(connection.integration_type)
        if integration is None:
            return
        try:
            secrets = self.get_secrets(connection)
            credentials = await self._credentials.get(connection.integration_type)
            await integration.revoke_token(secrets["accessToken"], credentials)
        except (IntegrationError, httpx.HTTPError, KeyError) as exc:
            logger.warning("Token revocation failed for %s: %s", connection.integration_type, exc)
