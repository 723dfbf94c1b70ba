"""
IntegrationRegistry — maps an integration type string to its handler.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

import httpx

from integrations.asana import AsanaIntegration
from integrations.base import ArchiveContext, BaseIntegration
from integrations.clickup import ClickUpIntegration
from integrations.errors import UnknownIntegrationError
from integrations.github import GitHubIntegration
from integrations.gitlab import GitLabIntegration
from integrations.hubspot import HubSpotIntegration
from integrations.jira import JiraIntegration
from integrations.linear import LinearIntegration
from integrations.salesforce import SalesforceIntegration
from integrations.slack import SlackIntegration
from integrations.teams import TeamsIntegration
from integrations.zendesk import ZendeskIntegration
from utils.schemas import ArchiveResult

logger = logging.getLogger(__name__)

# ── Built-in providers ────────────────────────────────────────────────────────────────────────────

_ALL_INTEGRATIONS = [
    SlackIntegration,
    TeamsIntegration,
    JiraIntegration,
    ClickUpIntegration,
    SalesforceIntegration,
    ZendeskIntegration,
    HubSpotIntegration,
    LinearIntegration,
    GitHubIntegration,
    GitLabIntegration,
    AsanaIntegration,
]


class IntegrationRegistry:
    """Registry of hook handlers, keyed by integration type."""

    def __init__(self) -> None:
        self._integrations: Dict[str, BaseIntegration] = {}

    def register(self, integration: BaseIntegration) -> None:
        if not integration.integration_type:
            raise ValueError(f"{type(integration).__name__} has no integration_type")
        self._integrations[integration.integration_type] = integration
        logger.debug("Integration registered: %s", integration.integration_type)

    def get(self, integration_type: str) -> Optional[BaseIntegration]:
        return self._integrations.get(integration_type)

    def require(self, integration_type: str) -> BaseIntegration:
        integration = self._integrations.get(integration_type)
        if integration is None:
            raise UnknownIntegrationError(integration_type)
        return integration

    def types(self) -> List[str]:
        return list(self._integrations.keys())

    def __contains__(self, integration_type: str) -> bool:
        return integration_type in self._integrations

    async def archive(self, integration_type: str, ctx: ArchiveContext) -> ArchiveResult:
        """
        Archive one external record.  Never raises: an unknown type, a
        provider without archive support or an unexpected exception all
        come back as a failed ``ArchiveResult``.
        """
        integration = self._integrations.get(integration_type)
        if integration is None:
            return ArchiveResult(success=False, error=f"Unknown integration: {integration_type}")
        if not integration.supports_archive:
            return ArchiveResult(success=False, error=f"Archive not supported for {integration_type}")
        try:
            return await integration.archive(ctx)
        except asyncio.TimeoutError:
            return ArchiveResult(success=False, error="Request timeout")
        except Exception as exc:
            logger.warning("Archive via %s failed for %s: %s", integration_type, ctx.external_id, exc)
            return ArchiveResult(success=False, error=str(exc) or exc.__class__.__name__)


def build_default_registry(transport: Optional[httpx.AsyncBaseTransport] = None) -> IntegrationRegistry:
    """Registry with every built-in provider; ``transport`` is for tests."""
    registry = IntegrationRegistry()
    for integration_cls in _ALL_INTEGRATIONS:
        registry.register(integration_cls(transport=transport))
    logger.info("Registered %d integrations: %s", len(registry.types()), ", ".join(registry.types()))
    return registry
