"""
PlatformCredentialStore — operator-configured OAuth app credentials
(client id / secret per integration type), encrypted at rest.

A row in ``platform_credentials`` wins; otherwise the environment-level
credentials from ``config.settings`` are used.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.helpers import insert_for, utcnow
from database.models import PlatformCredential
from integrations.encryption import PURPOSE_PLATFORM_CREDENTIALS, SecretCipher

logger = logging.getLogger(__name__)

Fallback = Callable[[str], Optional[Dict[str, str]]]


class PlatformCredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: SecretCipher,
        fallback: Optional[Fallback] = None,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._fallback = fallback

    async def get(self, integration_type: str) -> Optional[Dict[str, str]]:
        async with self._session_factory() as session:
            row = await session.get(PlatformCredential, integration_type)
        if row is not None:
            return self._cipher.decrypt_json(row.secrets, PURPOSE_PLATFORM_CREDENTIALS)
        if self._fallback is not None:
            return self._fallback(integration_type)
        return None

    async def save(
        self,
        integration_type: str,
        credentials: Dict[str, str],
        principal_id: Optional[str] = None,
    ) -> None:
        secrets = self._cipher.encrypt_json(dict(credentials), PURPOSE_PLATFORM_CREDENTIALS)
        now = utcnow()
        async with self._session_factory() as session:
            stmt = insert_for(session, PlatformCredential).values(
                integration_type=integration_type,
                secrets=secrets,
                configured_by_principal_id=principal_id,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["integration_type"],
                set_={
                    "secrets": secrets,
                    "configured_by_principal_id": principal_id,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            await session.commit()
        logger.info("Platform credentials saved for %s", integration_type)

    async def delete(self, integration_type: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(PlatformCredential).where(PlatformCredential.integration_type == integration_type)
            )
            await session.commit()
        return result.rowcount > 0

    async def is_configured(self, integration_type: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PlatformCredential.integration_type).where(
                    PlatformCredential.integration_type == integration_type
                )
            )
            if result.scalar_one_or_none() is not None:
                return True
        return bool(self._fallback and self._fallback(integration_type))
