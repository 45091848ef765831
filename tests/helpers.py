from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from forwarding_guard.accounts.actions import InboxRule, NotFound
from forwarding_guard.forwarding.models import ForwardingRecord, ObservedForward
from forwarding_guard.graph.client import GraphAPIError

T0 = datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)


def guid(n: int) -> str:
    return f"00000000-0000-0000-0000-{n:012d}"


def make_record(
    n: int,
    address: str,
    *,
    first_seen: datetime = T0,
    last_seen: Optional[datetime] = None,
    name: Optional[str] = None,
) -> ForwardingRecord:
    return ForwardingRecord(
        name=name or f"user{n}@contoso.test",
        guid=guid(n),
        forwarding_address=address,
        first_seen=first_seen,
        last_seen=last_seen or first_seen,
    )


def observe(n: int, raw_address: str, at: datetime, name: Optional[str] = None) -> ObservedForward:
    return ObservedForward(
        name=name or f"user{n}@contoso.test",
        guid=guid(n),
        raw_forwarding_address=raw_address,
        observed_at=at,
    )


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeActions:
    """In-memory stand-in for AccountActions, recording every call."""

    def __init__(self, identities=(), fail: Optional[dict[str, str]] = None):
        self.enabled = {i: True for i in identities}
        self.protocols = {i: True for i in identities}
        self.markers: dict[str, datetime] = {}
        self.rules: dict[str, list[InboxRule]] = {}
        self.fail = fail or {}
        self.calls: list[tuple] = []

    def _check(self, method: str, identity: str) -> None:
        self.calls.append((method, identity))
        if self.fail.get(identity) == method:
            raise GraphAPIError(500, f"{method} exploded", f"users/{identity}")

    async def exists(self, identity):
        return identity in self.enabled

    async def require(self, identity):
        self._check("require", identity)
        if identity not in self.enabled:
            raise NotFound(identity)

    async def block_sign_in(self, identity):
        self._check("block_sign_in", identity)
        self.enabled[identity] = False

    async def revoke_sessions(self, identity):
        self._check("revoke_sessions", identity)

    async def unblock_sign_in(self, identity):
        self._check("unblock_sign_in", identity)
        self.enabled[identity] = True

    async def set_protocols(self, identity, enabled):
        self._check("set_protocols", identity)
        self.protocols[identity] = enabled

    async def reset_password(self, identity):
        self._check("reset_password", identity)
        return "N3w-Passw0rd!"

    async def remove_forwarding(self, identity):
        self._check("remove_forwarding", identity)

    async def enable_mfa(self, identity):
        self._check("enable_mfa", identity)

    async def list_forwarding_inbox_rules(self, identity):
        self._check("list_forwarding_inbox_rules", identity)
        return list(self.rules.get(identity, []))

    async def disable_inbox_rule(self, identity, rule_id):
        self._check("disable_inbox_rule", identity)

    async def get_disable_marker(self, identity):
        if identity not in self.enabled:
            raise NotFound(identity)
        return self.markers.get(identity)

    async def set_disable_marker(self, identity, value):
        self._check("set_disable_marker", identity)
        if value is None:
            self.markers.pop(identity, None)
        else:
            self.markers[identity] = value

    async def list_marked_identities(self):
        return sorted(self.markers)

    def called(self, method: str) -> list[str]:
        return [i for m, i in self.calls if m == method]


class FakeEnumerator:
    def __init__(self, snapshot=(), error: Optional[Exception] = None):
        self.snapshot = list(snapshot)
        self.error = error

    async def list_forwarding_mailboxes(self):
        if self.error is not None:
            raise self.error
        return list(self.snapshot)
