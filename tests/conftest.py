"""
Shared fixtures: a throwaway SQLite database, a cipher, a controllable
clock and a scriptable fake integration.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.models import Base
from integrations.base import ArchiveContext, BaseIntegration, IntegrationContext
from integrations.encryption import SecretCipher
from integrations.platform_credentials import PlatformCredentialStore
from integrations.registry import IntegrationRegistry
from integrations.store import ConnectionStore
from utils.schemas import (
    ALL_EVENT_TYPES,
    ArchiveResult,
    ConnectionTestResult,
    EventData,
    HookResult,
    TokenGrant,
)

ROOT_SECRET = "test-root-secret-0123456789-abcdefghijklmnopqrstuvwxyz"
CREDENTIALS = {"clientId": "client-id", "clientSecret": "client-secret"}


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeIntegration(BaseIntegration):
    """Integration whose delivery, refresh and archive results are scripted."""

    def __init__(
        self,
        integration_type: str,
        results: Optional[List[HookResult]] = None,
        raises: Optional[BaseException] = None,
        archive_result: Optional[ArchiveResult] = None,
        archive_raises: Optional[BaseException] = None,
    ):
        super().__init__()
        self.integration_type = integration_type
        self.display_name = integration_type.title()
        self.supported_events = list(ALL_EVENT_TYPES)
        self.results = list(results or [])
        self.raises = raises
        self.archive_result = archive_result or ArchiveResult(success=True, action="archived")
        self.archive_raises = archive_raises
        self.calls: List[Dict[str, Any]] = []
        self.archive_calls: List[ArchiveContext] = []
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.revoked: List[str] = []

    async def _deliver(self, event: EventData, target: Dict[str, Any], ctx: IntegrationContext) -> HookResult:
        self.calls.append({"event": event, "target": target, "ctx": ctx})
        if self.raises is not None:
            raise self.raises
        if self.results:
            return self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return HookResult.ok()

    async def test_connection(self, ctx: IntegrationContext) -> ConnectionTestResult:
        return ConnectionTestResult(ok=True)

    async def refresh_access_token(self, refresh_token, credentials, config=None) -> TokenGrant:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        return TokenGrant(
            access_token=f"refreshed-{self.refresh_calls}",
            refresh_token=None,
            expires_in=3600,
        )

    async def revoke_token(self, access_token, credentials=None) -> bool:
        self.revoked.append(access_token)
        return True

    async def archive(self, ctx: ArchiveContext) -> ArchiveResult:
        self.archive_calls.append(ctx)
        if self.archive_raises is not None:
            raise self.archive_raises
        return self.archive_result


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'integrations.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(ROOT_SECRET)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fakes() -> Dict[str, FakeIntegration]:
    return {name: FakeIntegration(name) for name in ("slack", "jira", "teams")}


@pytest.fixture
def registry(fakes) -> IntegrationRegistry:
    reg = IntegrationRegistry()
    for integration in fakes.values():
        reg.register(integration)
    return reg


@pytest.fixture
def credentials(session_factory, cipher) -> PlatformCredentialStore:
    return PlatformCredentialStore(session_factory, cipher, fallback=lambda _type: dict(CREDENTIALS))


@pytest.fixture
def store(session_factory, cipher, registry, credentials, clock) -> ConnectionStore:
    return ConnectionStore(session_factory, cipher, registry, credentials, refresh_buffer_seconds=300, clock=clock)


def make_event(event_type: str = "post.created", **post: Any) -> EventData:
    post.setdefault("id", "post_1")
    post.setdefault("title", "Dark mode please")
    post.setdefault("boardId", "board_1")
    return EventData(type=event_type, data={"post": post})
