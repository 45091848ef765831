from __future__ import annotations

import pytest

from forwarding_guard.safety.guardian import ChangeBlocked, ChangeGuardian

GRAPH = "https://graph.microsoft.com/v1.0"
EXO = "https://outlook.office365.com/adminapi/beta/tenant-id/InvokeCommand"


def _cmdlet(name: str) -> dict:
    return {"CmdletInput": {"CmdletName": name, "Parameters": {}}}


def test_reads_always_pass() -> None:
    guardian = ChangeGuardian(dry_run=True)
    assert guardian.validate_request("GET", f"{GRAPH}/users?$filter=x")
    assert guardian.validate_request("POST", f"{GRAPH}/$batch")
    assert guardian.validate_request("POST", EXO, _cmdlet("Get-Mailbox"))
    assert guardian.suppressed == []


def test_allow_listed_write_passes_when_live() -> None:
    guardian = ChangeGuardian()
    assert guardian.validate_request("PATCH", f"{GRAPH}/users/user1@contoso.test", {"accountEnabled": False})
    assert guardian.validate_request("POST", EXO, _cmdlet("Set-CASMailbox"))
    assert guardian.writes_allowed == 2


def test_dry_run_suppresses_writes_and_redacts_passwords() -> None:
    guardian = ChangeGuardian(dry_run=True)
    body = {"passwordProfile": {"password": "secret", "forceChangePasswordNextSignIn": True}}

    assert guardian.validate_request("PATCH", f"{GRAPH}/users/user1@contoso.test", body) is False
    assert guardian.suppressed[0]["body"]["passwordProfile"] == "***"
    assert guardian.get_audit_record()["change_guardian"]["writes_suppressed"] == 1


@pytest.mark.parametrize(
    "url",
    [
        f"{GRAPH}/directoryRoles/abc/members/$ref",
        f"{GRAPH}/applications/abc",
        f"{GRAPH}/groups/abc",
        f"{GRAPH}/users/user1@contoso.test/memberOf",
    ],
)
def test_writes_outside_allow_list_are_blocked(url: str) -> None:
    guardian = ChangeGuardian(dry_run=True)
    with pytest.raises(ChangeBlocked):
        guardian.validate_request("PATCH", url, {})
    assert len(guardian.violations) == 1
