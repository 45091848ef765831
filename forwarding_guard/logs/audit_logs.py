"""
Audit log retrieval — pulls Entra ID sign-in or directory audit records for
a time window (optionally for one user) and writes them as JSON Lines.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ..forwarding.models import as_utc
from ..graph.client import GraphClient

logger = logging.getLogger("forwarding_guard.logs")


@dataclass(frozen=True)
class LogSource:
    endpoint: str
    time_field: str
    user_filter: str       # OData path compared against the UPN


LOG_SOURCES = {
    "signins": LogSource("auditLogs/signIns", "createdDateTime", "userPrincipalName"),
    "directory": LogSource("auditLogs/directoryAudits", "activityDateTime", "initiatedBy/user/userPrincipalName"),
}


def _odata_time(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_filter(
    source: LogSource,
    since: datetime,
    until: Optional[datetime] = None,
    user: Optional[str] = None,
) -> str:
    clauses = [f"{source.time_field} ge {_odata_time(since)}"]
    if until is not None:
        clauses.append(f"{source.time_field} lt {_odata_time(until)}")
    if user:
        escaped = user.replace("'", "''")
        clauses.append(f"{source.user_filter} eq '{escaped}'")
    return " and ".join(clauses)


class AuditLogFetcher:
    """Paginated reader for auditLogs/signIns and auditLogs/directoryAudits."""

    def __init__(self, graph: GraphClient):
        self.graph = graph

    async def fetch(
        self,
        kind: str,
        since: datetime,
        until: Optional[datetime] = None,
        user: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        if kind not in LOG_SOURCES:
            raise ValueError(f"Unknown log kind {kind!r}; expected one of {', '.join(LOG_SOURCES)}")
        if until is not None and as_utc(until) <= as_utc(since):
            raise ValueError("until must be later than since")

        source = LOG_SOURCES[kind]
        params = {
            "$filter": build_filter(source, since, until, user),
            "$orderby": f"{source.time_field} desc",
        }

        records = []
        async for item in self.graph.get_all_pages_stream(source.endpoint, params=params, top=limit):
            records.append(item)
            if limit is not None and len(records) >= limit:
                break

        logger.info(f"Fetched {len(records)} {kind} records since {_odata_time(since)}")
        return records


def export_jsonl(records: Iterable[dict], path: Path) -> Path:
    """Write one JSON object per line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with open(path, "w", encoding="utf-8") as fh:
        for record in records:
            fh.write(json.dumps(record, default=str, ensure_ascii=False) + "\n")
            count += 1
    logger.info(f"Wrote {count} records to {path}")
    return path
