"""Tests for the sync, governance and duplicate API endpoints."""

import pytest
from httpx import AsyncClient

from fakes import make_record
from kb_governance.db.models import IssueType, Severity

SYNC = "/api/v1/sync"
GOVERNANCE = "/api/v1/governance"


class TestSyncApi:
    """Tests for /api/v1/sync."""

    @pytest.mark.asyncio
    async def test_run_and_wait(self, client: AsyncClient, source):
        source.add(make_record(1), make_record(2))

        response = await client.post(f"{SYNC}/run", json={"mode": "FULL", "wait": True})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SUCCESS"
        assert data["trigger"] == "MANUAL"
        assert data["synced_count"] == 2
        assert data["processed_count"] == 2

    @pytest.mark.asyncio
    async def test_background_run_is_accepted(self, client: AsyncClient, orchestrator):
        response = await client.post(f"{SYNC}/run", json={"mode": "surgical"})

        assert response.status_code == 202
        assert response.json()["status"] == "RUNNING"
        assert response.json()["mode"] == "DELTA_SURGICAL"
        await orchestrator._background

        latest = await client.get(f"{SYNC}/runs/latest")
        assert latest.json()["status"] == "SUCCESS"

    @pytest.mark.asyncio
    async def test_run_conflict(self, client: AsyncClient, orchestrator):
        """A trigger while another run holds the lock returns 409."""
        assert orchestrator._lock.try_acquire()
        try:
            response = await client.post(f"{SYNC}/run", json={"wait": True})
        finally:
            orchestrator._lock.release()

        assert response.status_code == 409
        assert (await client.get(f"{SYNC}/runs")).json() == []

    @pytest.mark.asyncio
    async def test_invalid_mode(self, client: AsyncClient):
        response = await client.post(f"{SYNC}/run", json={"mode": "SIDEWAYS", "wait": True})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_negative_days_back_is_rejected(self, client: AsyncClient):
        response = await client.post(f"{SYNC}/run", json={"days_back": -1})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_no_runs_yet(self, client: AsyncClient):
        assert (await client.get(f"{SYNC}/runs/latest")).status_code == 404
        assert (await client.get(f"{SYNC}/runs/7")).status_code == 404
        status = (await client.get(f"{SYNC}/status")).json()
        assert status == {"running": False, "latest_run": None}

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, client: AsyncClient):
        response = await client.post(f"{SYNC}/cancel")
        assert response.json() == {"cancelled": False}

    @pytest.mark.asyncio
    async def test_config_roundtrip(self, client: AsyncClient):
        response = await client.put(
            f"{SYNC}/config", json={"enabled": True, "mode": "DELTA", "interval_minutes": 15}
        )
        assert response.status_code == 200

        config = (await client.get(f"{SYNC}/config")).json()
        assert config["enabled"] is True
        assert config["mode"] == "DELTA_WINDOW"
        assert config["interval_minutes"] == 15
        assert config["days_back"] == 0

    @pytest.mark.asyncio
    async def test_config_invalid_mode(self, client: AsyncClient):
        response = await client.put(f"{SYNC}/config", json={"mode": "weekly"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_sync_issues(self, client: AsyncClient, mirror):
        await mirror.sync(42)

        response = await client.get(f"{SYNC}/issues", params={"issue_type": "NOT_FOUND"})

        assert [(i["article_id"], i["issue_type"]) for i in response.json()] == [(42, "NOT_FOUND")]


class TestGovernanceApi:
    """Tests for /api/v1/governance/issues."""

    @pytest.mark.asyncio
    async def test_get_issue(self, client: AsyncClient, lifecycle):
        issue = await lifecycle.open(1, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")

        response = await client.get(f"{GOVERNANCE}/issues/{issue.id}")

        assert response.status_code == 200
        assert response.json()["status"] == "OPEN"
        assert response.json()["sla_due_at"] is not None

    @pytest.mark.asyncio
    async def test_unknown_issue(self, client: AsyncClient):
        assert (await client.get(f"{GOVERNANCE}/issues/999")).status_code == 404
        assert (await client.get(f"{GOVERNANCE}/issues/999/history")).status_code == 404

    @pytest.mark.asyncio
    async def test_list_filters(self, client: AsyncClient, lifecycle):
        await lifecycle.open(1, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")
        await lifecycle.open(2, IssueType.INCOMPLETE_CONTENT, Severity.ERROR, "Empty")

        response = await client.get(f"{GOVERNANCE}/issues", params={"severity": "ERROR"})

        assert [i["article_id"] for i in response.json()] == [2]

    @pytest.mark.asyncio
    async def test_ignore_requires_reason(self, client: AsyncClient, lifecycle):
        """Ignoring without a reason is rejected; with one it succeeds."""
        issue = await lifecycle.open(1, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")
        url = f"{GOVERNANCE}/issues/{issue.id}/status"

        rejected = await client.post(url, json={"status": "IGNORED", "actor": "editor"})
        accepted = await client.post(
            url, json={"status": "IGNORED", "actor": "editor", "ignored_reason": "Seasonal article"}
        )

        assert rejected.status_code == 422
        assert accepted.status_code == 200
        assert accepted.json()["ignored_reason"] == "Seasonal article"
        history = (await client.get(f"{url.rsplit('/', 1)[0]}/history")).json()
        assert "IGNORED" in [entry["action"] for entry in history]

    @pytest.mark.asyncio
    async def test_assign_without_ticket(self, client: AsyncClient, lifecycle):
        issue = await lifecycle.open(1, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")

        response = await client.post(
            f"{GOVERNANCE}/issues/{issue.id}/assign",
            json={"responsible_id": "agent-7", "responsible_name": "Ana", "actor": "lead"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ASSIGNED"
        assignments = (await client.get(f"{GOVERNANCE}/issues/{issue.id}/assignments")).json()
        assert [a["agent_id"] for a in assignments] == ["agent-7"]

    @pytest.mark.asyncio
    async def test_bulk_status(self, client: AsyncClient, lifecycle):
        first = await lifecycle.open(1, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")
        second = await lifecycle.open(2, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")

        response = await client.post(
            f"{GOVERNANCE}/issues/bulk-status",
            json={"issue_ids": [first.id, second.id, 999], "status": "RESOLVED", "actor": "editor"},
        )

        data = response.json()
        assert sorted(data["updated"]) == sorted([first.id, second.id])
        assert list(data["failed"]) == ["999"]

    @pytest.mark.asyncio
    async def test_bulk_ignore_requires_reason(self, client: AsyncClient, lifecycle):
        issue = await lifecycle.open(1, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")
        response = await client.post(
            f"{GOVERNANCE}/issues/bulk-status",
            json={"issue_ids": [issue.id], "status": "IGNORED", "actor": "editor"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_sla_summary(self, client: AsyncClient, lifecycle):
        await lifecycle.open(1, IssueType.OUTDATED_CONTENT, Severity.WARN, "Old")
        data = (await client.get(f"{GOVERNANCE}/issues/sla")).json()
        assert data["open"] == 1
        assert data["by_severity"]["WARN"] == 1


class TestDuplicatesApi:
    """Tests for /api/v1/governance/duplicates."""

    @pytest.mark.asyncio
    async def test_analyze_list_and_resolve(self, client: AsyncClient, mirror, source):
        source.add(make_record(1, text="Mesmo texto"), make_record(2, text="mesmo TEXTO"))
        await mirror.sync(1)
        await mirror.sync(2)

        analyzed = await client.post(f"{GOVERNANCE}/duplicates/analyze")
        groups = (await client.get(f"{GOVERNANCE}/duplicates")).json()

        assert analyzed.json()["duplicate_issues"] == 2
        assert len(groups) == 1
        content_hash = groups[0]["content_hash"]
        assert [m["article_id"] for m in groups[0]["members"]] == [1, 2]

        bad = await client.post(
            f"{GOVERNANCE}/duplicates/{content_hash}/primary", json={"primary_article_id": 9, "actor": "editor"}
        )
        good = await client.post(
            f"{GOVERNANCE}/duplicates/{content_hash}/primary", json={"primary_article_id": 1, "actor": "editor"}
        )

        assert bad.status_code == 422
        assert good.status_code == 200
        assert len(good.json()["updated"]) == 2
        assert (await client.get(f"{GOVERNANCE}/duplicates")).json() == []

    @pytest.mark.asyncio
    async def test_unknown_group(self, client: AsyncClient):
        response = await client.get(f"{GOVERNANCE}/duplicates/deadbeef")
        assert response.status_code == 404
        merge = await client.post(f"{GOVERNANCE}/duplicates/deadbeef/merge", json={"actor": "editor"})
        assert merge.status_code == 404
