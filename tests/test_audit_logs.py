from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import httpx
import pytest

from forwarding_guard.graph.client import GraphClient
from forwarding_guard.logs import LOG_SOURCES, AuditLogFetcher, build_filter, export_jsonl
from forwarding_guard.safety.guardian import ChangeGuardian
from tests.helpers import T0


def test_build_filter_for_user_window() -> None:
    flt = build_filter(LOG_SOURCES["signins"], T0, T0 + timedelta(days=1), "o'brien@contoso.test")
    assert flt == (
        "createdDateTime ge 2026-10-01T08:00:00Z and createdDateTime lt 2026-10-02T08:00:00Z "
        "and userPrincipalName eq 'o''brien@contoso.test'"
    )


def test_directory_filter_uses_initiator() -> None:
    flt = build_filter(LOG_SOURCES["directory"], T0, user="admin@contoso.test")
    assert "initiatedBy/user/userPrincipalName eq 'admin@contoso.test'" in flt
    assert flt.startswith("activityDateTime ge ")


@pytest.mark.asyncio
async def test_fetch_stops_at_limit() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"value": [{"id": i} for i in range(5)]})

    async with GraphClient("token", ChangeGuardian(), transport=httpx.MockTransport(handler)) as graph:
        records = await AuditLogFetcher(graph).fetch("signins", T0, limit=3)

    assert [r["id"] for r in records] == [0, 1, 2]
    assert requests[0].url.path == "/v1.0/auditLogs/signIns"
    assert requests[0].url.params["$top"] == "3"


@pytest.mark.asyncio
async def test_fetch_rejects_bad_arguments() -> None:
    fetcher = AuditLogFetcher(graph=None)
    with pytest.raises(ValueError):
        await fetcher.fetch("mailbox", T0)
    with pytest.raises(ValueError):
        await fetcher.fetch("signins", T0, until=T0)


def test_export_jsonl(tmp_path: Path) -> None:
    out = export_jsonl([{"id": 1}, {"id": 2, "when": T0}], tmp_path / "logs" / "signins.jsonl")
    lines = out.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["id"] for line in lines] == [1, 2]
