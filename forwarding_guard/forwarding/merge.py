"""
Merge engine — folds an enumeration snapshot into the forwarding history.

Only address-type forwards (ForwardingSmtpAddress, "smtp:" prefix) are
tracked. Forwards to mailbox objects (ForwardingAddress) are dropped.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, Optional

from .index import build_unique_index
from .models import ForwardingRecord, ForwardingStore, ObservedForward, as_utc, canonical_guid

logger = logging.getLogger("forwarding_guard.forwarding.merge")

SMTP_PREFIX = "smtp:"


def normalize_forwarding_address(raw: Optional[str]) -> Optional[str]:
    """
    Strip the smtp: prefix from a raw forwarding address.
    Returns None when the address is not an SMTP forward.
    """
    if not raw:
        return None
    raw = raw.strip()
    if not raw.lower().startswith(SMTP_PREFIX):
        return None
    address = raw[len(SMTP_PREFIX):].strip()
    return address or None


def merge(
    store: ForwardingStore,
    observations: Iterable[ObservedForward],
) -> ForwardingStore:
    """
    Reconcile observed forwards against the stored history.

    Existing guids get name/display name refreshed and last_seen advanced;
    first_seen restarts only when the forwarding address changed.
    Unknown guids are inserted with first_seen == last_seen.
    """
    index = build_unique_index(store, key=lambda r: r.guid)
    dropped = inserted = readdressed = 0

    for obs in observations:
        address = normalize_forwarding_address(obs.raw_forwarding_address)
        if address is None:
            dropped += 1
            logger.debug(
                f"Ignoring non-SMTP forward for {obs.name}: {obs.raw_forwarding_address!r}"
            )
            continue

        try:
            key = canonical_guid(obs.guid)
        except ValueError:
            dropped += 1
            logger.warning(f"Ignoring forward for {obs.name} with malformed guid {obs.guid!r}")
            continue

        seen_at = as_utc(obs.observed_at)
        current = index.get(key)

        if current is None:
            index[key] = ForwardingRecord(
                name=obs.name,
                display_name=obs.display_name,
                guid=key,
                forwarding_address=address,
                first_seen=seen_at,
                last_seen=seen_at,
            )
            inserted += 1
            continue

        first_seen = current.first_seen
        if current.forwarding_address != address:
            first_seen = seen_at
            readdressed += 1
            logger.info(
                f"Forwarding for {obs.name} changed: "
                f"{current.forwarding_address} -> {address}"
            )

        index[key] = replace(
            current,
            name=obs.name,
            display_name=obs.display_name,
            forwarding_address=address,
            first_seen=first_seen,
            last_seen=seen_at,
        )

    logger.info(
        f"Merge complete — {len(index)} records "
        f"({inserted} new, {readdressed} re-addressed, {dropped} ignored)"
    )
    return ForwardingStore.of(index.values())
