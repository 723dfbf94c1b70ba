"""
Tests for the cascade archive orchestrator.
"""

import asyncio
import uuid

import httpx
import pytest
from sqlalchemy import select

from database.models import LinkedExternalRecord
from integrations.cascade import CascadeArchiveOrchestrator, default_choices
from utils.schemas import ArchiveResult, CascadeChoice

WS = "ws_1"
POST = "post_1"


@pytest.fixture
def orchestrator(session_factory, store, registry):
    return CascadeArchiveOrchestrator(session_factory, store, registry, timeout_seconds=5)


async def _link(session_factory, connection, external_id, primary_id=POST, workspace_id=WS):
    link = LinkedExternalRecord(
        link_id=uuid.uuid4(),
        workspace_id=workspace_id,
        primary_id=primary_id,
        connection_id=connection.connection_id if connection is not None else None,
        integration_type=connection.integration_type if connection is not None else "jira",
        external_id=external_id,
        external_url=f"https://example.test/{external_id}",
    )
    async with session_factory() as session:
        session.add(link)
        await session.commit()
    return link


async def _status(session_factory, link):
    async with session_factory() as session:
        row = await session.get(LinkedExternalRecord, link.link_id, populate_existing=True)
    return row.status, row.last_error


class TestRequestCascadeDelete:
    @pytest.mark.asyncio
    async def test_views_carry_default_policy(self, orchestrator, store, session_factory, fakes):
        jira = await store.save_connection(WS, "jira", "m", "jira-token", config={"onDelete": "archive"})
        slack = await store.save_connection(WS, "slack", "m", "slack-token")
        jira_link = await _link(session_factory, jira, "PROJ-1")
        slack_link = await _link(session_factory, slack, "1700000000.0001")

        views = await orchestrator.request_cascade_delete(WS, POST)

        by_id = {v.link_id: v for v in views}
        assert by_id[str(jira_link.link_id)].default_policy == "archive"
        assert by_id[str(jira_link.link_id)].default_should_archive is True
        assert by_id[str(slack_link.link_id)].default_policy == "nothing"
        assert by_id[str(slack_link.link_id)].default_should_archive is False

        choices = {c.link_id: c.should_archive for c in default_choices(views)}
        assert choices == {str(jira_link.link_id): True, str(slack_link.link_id): False}
        # defaults are only suggestions
        assert fakes["jira"].archive_calls == []

    @pytest.mark.asyncio
    async def test_paused_connection_not_suggested(self, orchestrator, store, session_factory):
        jira = await store.save_connection(WS, "jira", "m", "t", config={"onDelete": "archive"})
        await store.set_status(WS, "jira", "paused")
        await _link(session_factory, jira, "PROJ-1")

        (view,) = await orchestrator.request_cascade_delete(WS, POST)

        assert view.connection_status == "paused"
        assert view.default_should_archive is False

    @pytest.mark.asyncio
    async def test_detached_link_listed_without_connection(self, orchestrator, session_factory):
        await _link(session_factory, None, "PROJ-9")

        (view,) = await orchestrator.request_cascade_delete(WS, POST)

        assert view.connection_id is None
        assert view.connection_status is None
        assert view.default_policy == "nothing"

    @pytest.mark.asyncio
    async def test_only_active_links_for_this_record(self, orchestrator, store, session_factory):
        jira = await store.save_connection(WS, "jira", "m", "t")
        await _link(session_factory, jira, "PROJ-1")
        await _link(session_factory, jira, "PROJ-2", primary_id="post_2")
        archived = await _link(session_factory, jira, "PROJ-3")
        async with session_factory() as session:
            row = await session.get(LinkedExternalRecord, archived.link_id)
            row.status = "archived"
            await session.commit()

        views = await orchestrator.request_cascade_delete(WS, POST)

        assert [v.external_id for v in views] == ["PROJ-1"]


class TestExecuteCascadeDelete:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_the_other(self, orchestrator, store, session_factory, fakes):
        jira = await store.save_connection(WS, "jira", "m", "jira-token")
        teams = await store.save_connection(WS, "teams", "m", "teams-token")
        jira_link = await _link(session_factory, jira, "PROJ-1")
        teams_link = await _link(session_factory, teams, "msg-1")
        fakes["teams"].archive_raises = httpx.ConnectError("connection refused")

        results = await orchestrator.execute_cascade_delete(
            WS,
            [
                CascadeChoice(link_id=str(jira_link.link_id), should_archive=True),
                CascadeChoice(link_id=str(teams_link.link_id), should_archive=True),
            ],
        )

        by_type = {r.integration_type: r for r in results}
        assert by_type["jira"].success is True
        assert by_type["jira"].action == "archived"
        assert by_type["teams"].success is False
        assert "connection refused" in by_type["teams"].error

        assert await _status(session_factory, jira_link) == ("archived", None)
        status, last_error = await _status(session_factory, teams_link)
        assert status == "error"
        assert "connection refused" in last_error

        ctx = fakes["jira"].archive_calls[0]
        assert ctx.external_id == "PROJ-1"
        assert ctx.access_token == "jira-token"
        assert ctx.external_url == "https://example.test/PROJ-1"

    @pytest.mark.asyncio
    async def test_closed_action_persisted(self, orchestrator, store, session_factory, fakes):
        jira = await store.save_connection(WS, "jira", "m", "t")
        link = await _link(session_factory, jira, "PROJ-1")
        fakes["jira"].archive_result = ArchiveResult(success=True, action="closed")

        await orchestrator.execute_cascade_delete(WS, [CascadeChoice(link_id=str(link.link_id), should_archive=True)])

        assert await _status(session_factory, link) == ("closed", None)

    @pytest.mark.asyncio
    async def test_unchosen_links_untouched(self, orchestrator, store, session_factory, fakes):
        jira = await store.save_connection(WS, "jira", "m", "t", config={"onDelete": "archive"})
        link = await _link(session_factory, jira, "PROJ-1")

        results = await orchestrator.execute_cascade_delete(
            WS, [CascadeChoice(link_id=str(link.link_id), should_archive=False)]
        )

        assert results == []
        assert fakes["jira"].archive_calls == []
        assert await _status(session_factory, link) == ("active", None)

    @pytest.mark.asyncio
    async def test_paused_connection_fails_without_remote_call(self, orchestrator, store, session_factory, fakes):
        jira = await store.save_connection(WS, "jira", "m", "t")
        await store.set_status(WS, "jira", "paused")
        link = await _link(session_factory, jira, "PROJ-1")

        (result,) = await orchestrator.execute_cascade_delete(
            WS, [CascadeChoice(link_id=str(link.link_id), should_archive=True)]
        )

        assert result.success is False
        assert result.error == "Integration is paused"
        assert fakes["jira"].archive_calls == []

    @pytest.mark.asyncio
    async def test_detached_link_fails(self, orchestrator, session_factory):
        link = await _link(session_factory, None, "PROJ-1")

        (result,) = await orchestrator.execute_cascade_delete(
            WS, [CascadeChoice(link_id=str(link.link_id), should_archive=True)]
        )

        assert result.success is False
        assert result.error == "Integration no longer connected"
        assert (await _status(session_factory, link))[0] == "error"

    @pytest.mark.asyncio
    async def test_other_workspace_links_reported_unknown(self, orchestrator, store, session_factory, fakes):
        jira = await store.save_connection("ws_other", "jira", "m", "t")
        link = await _link(session_factory, jira, "PROJ-1", workspace_id="ws_other")

        (result,) = await orchestrator.execute_cascade_delete(
            WS, [CascadeChoice(link_id=str(link.link_id), should_archive=True)]
        )

        assert result.link_id == str(link.link_id)
        assert result.success is False
        assert result.error == "Unknown link"
        assert fakes["jira"].archive_calls == []
        assert await _status(session_factory, link) == ("active", None)

    @pytest.mark.asyncio
    async def test_unresolvable_link_ids_reported(self, orchestrator, store, session_factory, fakes):
        jira = await store.save_connection(WS, "jira", "m", "t")
        link = await _link(session_factory, jira, "PROJ-1")
        missing = str(uuid.uuid4())

        results = await orchestrator.execute_cascade_delete(
            WS,
            [
                CascadeChoice(link_id="not-a-uuid", should_archive=True),
                CascadeChoice(link_id=str(link.link_id), should_archive=True),
                CascadeChoice(link_id=missing, should_archive=True),
            ],
        )

        assert [(r.link_id, r.success, r.error) for r in results] == [
            (str(link.link_id), True, None),
            ("not-a-uuid", False, "Unknown link"),
            (missing, False, "Unknown link"),
        ]
        assert [ctx.external_id for ctx in fakes["jira"].archive_calls] == ["PROJ-1"]

    @pytest.mark.asyncio
    async def test_timeout(self, session_factory, store, registry, fakes):
        orchestrator = CascadeArchiveOrchestrator(session_factory, store, registry, timeout_seconds=0.05)
        jira = await store.save_connection(WS, "jira", "m", "t")
        link = await _link(session_factory, jira, "PROJ-1")

        async def hang(ctx):
            await asyncio.sleep(1)

        fakes["jira"].archive = hang

        (result,) = await orchestrator.execute_cascade_delete(
            WS, [CascadeChoice(link_id=str(link.link_id), should_archive=True)]
        )

        assert result.success is False
        assert result.error == "Request timeout"
