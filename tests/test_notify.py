from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from forwarding_guard.graph.client import GraphClient
from forwarding_guard.notify.email_summary import EmailNotifier, build_subject, render_summary
from forwarding_guard.remediation.lifecycle import UnblockOutcome
from forwarding_guard.remediation.orchestrator import IdentityOutcome, RemediationReport, StepOutcome
from forwarding_guard.safety.guardian import ChangeGuardian
from tests.helpers import T0, make_record

SINCE = T0 - timedelta(hours=24)


def _records():
    dup_a = make_record(1, "x@evil.test")
    dup_b = make_record(2, "x@evil.test")
    fresh = make_record(3, "<script>@partner.test")
    return [dup_a, dup_b, fresh], [dup_a, dup_b]


def test_render_marks_duplicates_and_overflow() -> None:
    new, dups = _records()
    report = RemediationReport(
        capacity=1,
        outcomes=[IdentityOutcome(
            identity="user1@contoso.test", status="partial",
            steps=[StepOutcome("block", True), StepOutcome("enable_mfa", False, "403")],
            new_password="S3cret-value!",
        )],
        overflow=[dups[1]],
    )
    html = render_summary(new, dups, SINCE, remediation=report, tenant_name="Contoso", dry_run=True)

    assert "Contoso" in html
    assert html.count("DUPLICATE") == 2
    assert "MANUAL FOLLOW-UP" in html
    assert "user2@contoso.test" in html
    assert "DRY RUN" in html
    assert "S3cret-value!" not in html
    assert "&lt;script&gt;" in html


def test_render_without_findings() -> None:
    html = render_summary([], [], SINCE, unblocks=[UnblockOutcome("a@contoso.test", "unblocked")])
    assert "No new forwarding configured" in html
    assert "a@contoso.test" in html


def test_subject_escalates_on_duplicates() -> None:
    assert build_subject("[FG]", 3, 0) == "[FG] 3 new forwarding configuration(s)"
    assert "ALERT" in build_subject("[FG]", 3, 2)


def test_notifier_requires_sender_and_recipients() -> None:
    with pytest.raises(ValueError):
        EmailNotifier(None, "", ["soc@contoso.test"])
    with pytest.raises(ValueError):
        EmailNotifier(None, "alerts@contoso.test", [])


@pytest.mark.asyncio
async def test_send_summary_posts_send_mail() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202)

    new, dups = _records()
    graph = GraphClient("token", ChangeGuardian(), transport=httpx.MockTransport(handler))
    async with graph:
        notifier = EmailNotifier(graph, "alerts@contoso.test", ["soc@contoso.test"], subject_prefix="[FG]")
        await notifier.send_summary(new, dups, None, SINCE)

    assert requests[0].url.path == "/v1.0/users/alerts@contoso.test/sendMail"
    payload = json.loads(requests[0].content)
    assert payload["message"]["subject"].startswith("[FG] ALERT")
    assert payload["message"]["toRecipients"] == [{"emailAddress": {"address": "soc@contoso.test"}}]
