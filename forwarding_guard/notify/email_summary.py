"""
Summary email — renders the run summary as HTML via Jinja2 and sends it
through Graph sendMail from a configured mailbox.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .. import __version__
from ..forwarding.index import build_multi_index
from ..forwarding.models import ForwardingRecord
from ..forwarding.query import duplicate_key
from ..graph.client import GraphClient
from ..remediation.lifecycle import UnblockOutcome
from ..remediation.orchestrator import RemediationReport

logger = logging.getLogger("forwarding_guard.notify")

TEMPLATE_DIR = Path(__file__).parent / "templates"


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "html.j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_summary(
    new_records: Sequence[ForwardingRecord],
    duplicate_records: Sequence[ForwardingRecord],
    since: datetime,
    remediation: Optional[RemediationReport] = None,
    unblocks: Sequence[UnblockOutcome] = (),
    tenant_name: str = "Unknown Tenant",
    dry_run: bool = False,
) -> str:
    """Render the HTML body. New passwords are never passed to the template."""
    groups = build_multi_index(duplicate_records, key=duplicate_key)
    duplicate_groups = sorted(
        ((records[0].forwarding_address, records) for records in groups.values()),
        key=lambda item: item[0].lower(),
    )
    template = _environment().get_template("summary.html.j2")
    return template.render(
        tenant_name=tenant_name,
        since_utc=since.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        generated_utc=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        version=__version__,
        new_records=sorted(new_records, key=lambda r: r.first_seen),
        duplicate_groups=duplicate_groups,
        duplicate_guids={r.guid for r in duplicate_records},
        remediation=remediation,
        unblocks=list(unblocks),
        dry_run=dry_run,
    )


def build_subject(prefix: str, new_count: int, duplicate_count: int) -> str:
    if duplicate_count:
        return f"{prefix} ALERT: {duplicate_count} mailboxes share forwarding addresses"
    return f"{prefix} {new_count} new forwarding configuration(s)"


class EmailNotifier:
    """Sends the summary as `sender` to a fixed recipient list."""

    def __init__(
        self,
        graph: GraphClient,
        sender: str,
        recipients: Sequence[str],
        subject_prefix: str = "[Forwarding Guard]",
        tenant_name: str = "Unknown Tenant",
    ):
        if not sender:
            raise ValueError("A sender mailbox is required to send notifications")
        if not recipients:
            raise ValueError("At least one recipient is required to send notifications")
        self.graph = graph
        self.sender = sender
        self.recipients = list(recipients)
        self.subject_prefix = subject_prefix
        self.tenant_name = tenant_name

    async def send_summary(
        self,
        new_records: Sequence[ForwardingRecord],
        duplicate_records: Sequence[ForwardingRecord],
        remediation: Optional[RemediationReport],
        since: datetime,
        unblocks: Sequence[UnblockOutcome] = (),
        dry_run: bool = False,
    ) -> None:
        body = render_summary(
            new_records,
            duplicate_records,
            since,
            remediation=remediation,
            unblocks=unblocks,
            tenant_name=self.tenant_name,
            dry_run=dry_run,
        )
        message = {
            "message": {
                "subject": build_subject(self.subject_prefix, len(new_records), len(duplicate_records)),
                "body": {"contentType": "HTML", "content": body},
                "toRecipients": [
                    {"emailAddress": {"address": addr}} for addr in self.recipients
                ],
            },
            "saveToSentItems": False,
        }
        await self.graph.post(f"users/{self.sender}/sendMail", message)
        logger.info(f"Summary email sent to {', '.join(self.recipients)}")
