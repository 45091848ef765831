"""
Forwarding Guard — command line entry point.

Usage:
    python -m forwarding_guard scan                          # detect and notify
    python -m forwarding_guard scan --remediate --capacity 10
    python -m forwarding_guard scan --dry-run --remediate    # preview every write
    python -m forwarding_guard block user@contoso.com
    python -m forwarding_guard unblock --all                 # cooldown-gated sweep
    python -m forwarding_guard unblock user@contoso.com --force
    python -m forwarding_guard report --duplicates           # offline, no sign-in
    python -m forwarding_guard logs signins --since 2026-10-01 --user user@contoso.com
    python -m forwarding_guard history

Profile management:
    python -m forwarding_guard profile add <name> --tenant-id ... --client-id ... --organization ...
    python -m forwarding_guard profile list
    python -m forwarding_guard profile remove <name>
    python -m forwarding_guard profile set-default <name>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from . import __version__
from .config import CertificateAuth, DelegatedAuth, EngineConfig
from .safety.guardian import ChangeBlocked, ChangeGuardian
from .auth.authenticator import Authenticator, AuthenticationError
from .graph.client import GraphAPIError, GraphClient
from .exchange.client import ExchangeClient
from .accounts.actions import AccountActions, MailboxEnumerator, NotFound
from .forwarding.models import as_utc
from .forwarding.query import QueryError, query
from .remediation.lifecycle import BlockLifecycle
from .remediation.orchestrator import ALL_STEPS, CompromiseResponse
from .notify.email_summary import EmailNotifier
from .logs.audit_logs import LOG_SOURCES, AuditLogFetcher, export_jsonl
from .store.csv_store import CsvForwardingStore, PersistenceRefused, StoreFormatError
from .store.journal import RunJournal
from .pipeline import SweepOptions, _journal_unblocks, default_since, run_scan, run_unblock_sweep
from .profiles import ProfileStore, TenantProfile, resolve_profile

logger = logging.getLogger("forwarding_guard")


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default`."""
    store = ProfileStore.load()
    action = args.profile_action

    if action == "list":
        profiles = store.list_profiles()
        if not profiles:
            print("No profiles configured. Add one with:\n")
            print("  python -m forwarding_guard profile add <name> \\")
            print("    --tenant-id <GUID> --client-id <GUID> --organization <tenant>.onmicrosoft.com")
            return 0
        print(f"\n  {'Name':<20s} {'Tenant ID':<38s} {'Organization':<34s} {'Default'}")
        print(f"  {'─'*20} {'─'*38} {'─'*34} {'─'*7}")
        for p in profiles:
            default_marker = "  ✓" if p.name == store.default_profile else ""
            print(f"  {p.name:<20s} {p.tenant_id:<38s} {p.organization:<34s}{default_marker}")
        print()
        return 0

    if action == "add":
        if store.get(args.profile_name):
            print(f"  Profile '{args.profile_name}' already exists. It will be overwritten.")
        profile = TenantProfile(
            name=args.profile_name,
            tenant_id=args.tenant_id,
            client_id=args.client_id,
            organization=args.organization,
            cert_path=args.cert_path or "./base64.txt",
            tenant_display_name=args.display_name or "",
            notify_sender=args.notify_sender or "",
            notify_recipients=args.notify_to or [],
        )
        set_as_default = args.set_default or not store.profiles
        store.add(profile, set_default=set_as_default)
        print(f"  ✅ Profile '{args.profile_name}' saved.")
        if set_as_default:
            print("  ✅ Set as default profile.")
        return 0

    if action == "remove":
        if store.remove(args.profile_name):
            print(f"  ✅ Profile '{args.profile_name}' removed.")
            return 0
        print(f"  ❌ Profile '{args.profile_name}' not found.")
        return 1

    if action == "set-default":
        if store.set_default(args.profile_name):
            print(f"  ✅ Default profile set to '{args.profile_name}'.")
            return 0
        print(f"  ❌ Profile '{args.profile_name}' not found.")
        return 1

    print("Usage: python -m forwarding_guard profile {add|list|remove|set-default}")
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _parse_time(value: str) -> datetime:
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 date/time: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--profile", "-p", help="Tenant profile name (see 'profile list')")
    common.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    common.add_argument("--delegated", action="store_true",
                        help="Use device-code sign-in instead of certificate auth")
    common.add_argument("--tenant-id", help="Tenant ID (overrides profile)")
    common.add_argument("--client-id", help="Client ID (overrides profile)")
    common.add_argument("--organization", help="Initial domain, e.g. contoso.onmicrosoft.com")
    common.add_argument("--cert-path", type=Path, help="Base64-encoded PFX (overrides profile)")
    common.add_argument("--data-dir", type=Path, help="Directory for the forwarding history and journal")
    common.add_argument("--dry-run", action="store_true", help="Log tenant writes instead of sending them")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    parser = argparse.ArgumentParser(
        prog="forwarding_guard",
        description="Detect and remediate suspicious mailbox forwarding in Microsoft 365",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", help="Commands")

    # --- profile ---
    prof_parser = sub.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")
    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--organization", required=True, help="Initial domain, e.g. contoso.onmicrosoft.com")
    add_p.add_argument("--cert-path", default="./base64.txt", help="Path to base64-encoded PFX")
    add_p.add_argument("--display-name", help="Friendly tenant name for emails")
    add_p.add_argument("--notify-sender", help="Mailbox the summary email is sent from")
    add_p.add_argument("--notify-to", nargs="+", help="Summary email recipients")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")
    prof_sub.add_parser("list", help="List all configured profiles")
    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name")
    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name")

    # --- scan ---
    scan_p = sub.add_parser("scan", parents=[common], help="Enumerate, merge, report and optionally remediate")
    window = scan_p.add_mutually_exclusive_group()
    window.add_argument("--since", type=_parse_time, help="Report forwards first seen after this time")
    window.add_argument("--lookback-hours", type=int, help="Report forwards first seen in the last N hours")
    scan_p.add_argument("--remediate", action="store_true", help="Remediate new duplicate forwards")
    scan_p.add_argument("--capacity", type=int, help="Maximum identities remediated this run")
    scan_p.add_argument("--steps", nargs="+", choices=ALL_STEPS, help="Remediation steps to run")
    scan_p.add_argument("--auto-unblock", action="store_true", help="Run the unblock sweep after the scan")
    scan_p.add_argument("--notify", action="store_true", help="Send the summary email")
    scan_p.add_argument("--json-out", type=Path, help="Write the run summary as JSON")

    # --- block ---
    block_p = sub.add_parser("block", parents=[common], help="Block identities and stamp the disable marker")
    block_p.add_argument("identities", nargs="+", help="User principal names or object ids")
    block_p.add_argument("--keep-protocols", action="store_true", help="Leave mail protocols enabled")

    # --- unblock ---
    unblock_p = sub.add_parser("unblock", parents=[common], help="Re-enable blocked identities after the cooldown")
    unblock_p.add_argument("identities", nargs="*", default=[], help="Identities to unblock")
    unblock_p.add_argument("--all", action="store_true", help="Sweep every identity carrying a disable marker")
    unblock_p.add_argument("--force", action="store_true", help="Ignore the cooldown and a missing marker")
    unblock_p.add_argument("--min-elapsed-minutes", type=int, help="Cooldown since the block (default 58)")
    unblock_p.add_argument("--keep-protocols-disabled", action="store_true",
                           help="Do not re-enable mail protocols")

    # --- report (offline) ---
    report_p = sub.add_parser("report", parents=[common], help="Query the stored forwarding history")
    bound = report_p.add_mutually_exclusive_group()
    bound.add_argument("--new-since", type=_parse_time, help="Records seen after this time")
    bound.add_argument("--stale-since", type=_parse_time, help="Records not seen since this time")
    report_p.add_argument("--use-last-seen", action="store_true", help="--new-since compares LastSeen")
    report_p.add_argument("--duplicates", action="store_true", help="Only records sharing an address")
    report_p.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    # --- logs ---
    logs_p = sub.add_parser("logs", parents=[common], help="Download sign-in or directory audit logs")
    logs_p.add_argument("kind", choices=sorted(LOG_SOURCES), help="Log type")
    logs_p.add_argument("--since", type=_parse_time, required=True)
    logs_p.add_argument("--until", type=_parse_time)
    logs_p.add_argument("--user", help="Only records for this user principal name")
    logs_p.add_argument("--limit", type=int, help="Stop after N records")
    logs_p.add_argument("--out", type=Path, help="Output .jsonl path")

    # --- history ---
    hist_p = sub.add_parser("history", parents=[common], help="Show recent runs from the journal")
    hist_p.add_argument("--limit", type=int, default=10)
    hist_p.add_argument("--identity", help="Show actions taken against one identity")

    return parser


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(Exception):
    """Raised when no usable tenant configuration could be assembled."""
    pass


def build_config(args: argparse.Namespace, profile: Optional[TenantProfile] = None) -> EngineConfig:
    """Merge JSON config, profile and CLI flags (CLI wins)."""
    if getattr(args, "config", None):
        config = EngineConfig.from_file(args.config)
    else:
        config = EngineConfig()

    if getattr(args, "delegated", False):
        config.auth.mode = "delegated"
    if getattr(args, "dry_run", False):
        config.dry_run = True
    if getattr(args, "verbose", False):
        config.verbose = True
    if getattr(args, "data_dir", None):
        config.store.data_dir = str(args.data_dir)

    existing = config.auth.certificate or config.auth.delegated
    tenant_id = args.tenant_id or (profile.tenant_id if profile else None) or (existing.tenant_id if existing else None)
    client_id = args.client_id or (profile.client_id if profile else None) or (existing.client_id if existing else None)
    organization = args.organization or (profile.organization if profile else "") or config.auth.organization

    if not tenant_id or not client_id:
        raise ConfigError(
            "No tenant credentials found. Use --profile <name>, "
            "--tenant-id X --client-id Y, or --config config.json."
        )
    config.auth.organization = organization

    if config.auth.mode == "certificate":
        if args.cert_path:
            cert_path = str(args.cert_path)
        elif profile:
            cert_path = profile.resolve_cert_path()
        elif config.auth.certificate:
            cert_path = config.auth.certificate.certificate_path
        else:
            cert_path = "./base64.txt"
        password = config.auth.certificate.certificate_password if config.auth.certificate else ""
        config.auth.certificate = CertificateAuth(
            tenant_id=tenant_id,
            client_id=client_id,
            certificate_path=cert_path,
            certificate_password=password,
        )
    else:
        config.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)

    if profile:
        if profile.notify_sender and not config.notify.sender:
            config.notify.sender = profile.notify_sender
        if profile.notify_recipients and not config.notify.recipients:
            config.notify.recipients = list(profile.notify_recipients)

    if hasattr(args, "capacity") and args.capacity is not None:
        config.remediation.capacity = args.capacity
    if getattr(args, "remediate", False):
        config.remediation.enabled = True
    if getattr(args, "auto_unblock", False):
        config.remediation.auto_unblock = True
    if getattr(args, "notify", False):
        config.notify.enabled = True
    if getattr(args, "min_elapsed_minutes", None) is not None:
        config.remediation.min_elapsed_minutes = args.min_elapsed_minutes

    return config


def _tenant_id(config: EngineConfig) -> str:
    auth = config.auth.certificate if config.auth.mode == "certificate" else config.auth.delegated
    return auth.tenant_id if auth else ""


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]


def _banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(f" {title}")
    print("=" * 70)


def _print_required_permissions() -> None:
    print("\n  The app registration needs these application permissions:")
    for name, purpose in Authenticator.list_required_permissions().items():
        print(f"    {name:<40s} {purpose}")


def _print_suppressed_writes(guardian: ChangeGuardian) -> None:
    """List the tenant writes a dry run held back."""
    record = guardian.get_audit_record()["change_guardian"]
    if record["mode"] != "DRY-RUN":
        return
    _banner(f"DRY RUN — {record['writes_suppressed']} write(s) not sent")
    for write in guardian.suppressed:
        print(f"  {write['method']:<6s} {write['url']}")
        if write["body"]:
            print(f"         {json.dumps(write['body'], default=str)}")


# ---------------------------------------------------------------------------
# Commands that talk to the tenant
# ---------------------------------------------------------------------------

class TenantSession:
    """Authenticated Graph and Exchange clients sharing one change guardian."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self.guardian = ChangeGuardian(dry_run=config.dry_run)
        self.graph: Optional[GraphClient] = None
        self.exchange: Optional[ExchangeClient] = None

    async def __aenter__(self) -> "TenantSession":
        authenticator = Authenticator(self.config.auth)
        graph_token = authenticator.acquire_graph_token()
        exchange_token = authenticator.acquire_exchange_token()
        self.graph = await GraphClient(graph_token, self.guardian).__aenter__()
        self.exchange = await ExchangeClient(
            exchange_token,
            self.guardian,
            tenant_id=_tenant_id(self.config),
            organization=self.config.auth.organization,
        ).__aenter__()
        return self

    async def __aexit__(self, *exc):
        if self.exchange:
            await self.exchange.__aexit__(*exc)
        if self.graph:
            await self.graph.__aexit__(*exc)
        _print_suppressed_writes(self.guardian)

    def actions(self) -> AccountActions:
        return AccountActions(
            self.graph,
            self.exchange,
            marker_attribute=self.config.remediation.marker_attribute,
            protocols=self.config.remediation.protocols,
        )


def _sweep_options(config: EngineConfig, args: argparse.Namespace) -> SweepOptions:
    return SweepOptions(
        enable_protocols=not getattr(args, "keep_protocols_disabled", False),
        min_elapsed=config.remediation.min_elapsed,
        force=getattr(args, "force", False),
    )


async def _cmd_scan(args: argparse.Namespace, config: EngineConfig, tenant_name: str) -> int:
    run_id = _new_run_id()
    if args.since:
        since = args.since
    else:
        since = default_since(args.lookback_hours or config.store.lookback_hours)

    journal = RunJournal(config.store.journal_path)
    journal.start_run(run_id, "scan", {"since": since, "dry_run": config.dry_run})
    persistence = CsvForwardingStore(config.store.history_path)

    print(f"\n📋 Run ID:  {run_id}")
    print(f"📂 History: {config.store.history_path.resolve()}")
    print(f"🏢 Tenant:  {tenant_name}")
    print(f"🕒 Since:   {since:%Y-%m-%d %H:%M} UTC")
    if config.dry_run:
        print("🧪 DRY RUN — tenant writes are logged, not sent")

    try:
        async with TenantSession(config) as session:
            actions = session.actions()
            lifecycle = BlockLifecycle(actions)
            remediate_fn = None
            if config.remediation.enabled:
                steps = args.steps or [
                    s for s in ALL_STEPS
                    if s == "block" or getattr(config.remediation, s, True)
                ]
                remediate_fn = CompromiseResponse(
                    actions, lifecycle, steps=steps,
                    disable_protocols=config.remediation.disable_protocols,
                    dry_run=config.dry_run,
                )
            notifier = None
            if config.notify.enabled:
                notifier = EmailNotifier(
                    session.graph,
                    config.notify.sender,
                    config.notify.recipients,
                    subject_prefix=config.notify.subject_prefix,
                    tenant_name=tenant_name,
                )

            _banner("SCAN")
            summary = await run_scan(
                MailboxEnumerator(session.exchange),
                persistence,
                since,
                run_id,
                remediate_fn=remediate_fn,
                capacity=config.remediation.capacity,
                lifecycle=lifecycle,
                sweep=_sweep_options(config, args) if config.remediation.auto_unblock else None,
                notifier=notifier,
                journal=journal,
                dry_run=config.dry_run,
            )
    except (PersistenceRefused, StoreFormatError) as e:
        journal.complete_run(run_id, status="aborted", metadata={"error": str(e)})
        print(f"\n❌ Forwarding history problem, nothing remediated: {e}")
        return 1
    except (GraphAPIError, AuthenticationError, ChangeBlocked, ValueError) as e:
        journal.complete_run(run_id, status="failed", metadata={"error": str(e)})
        print(f"\n❌ Scan failed: {e}")
        if isinstance(e, AuthenticationError):
            _print_required_permissions()
        return 1

    _print_scan_summary(summary)
    if args.json_out:
        args.json_out.parent.mkdir(parents=True, exist_ok=True)
        args.json_out.write_text(json.dumps(summary.to_dict(), indent=2, default=str), encoding="utf-8")
        print(f"  📄 JSON:  {args.json_out}")

    journal.complete_run(run_id, metadata=summary.to_dict())
    return 0


def _print_scan_summary(summary) -> None:
    _banner("SUMMARY")
    print(f"  Observed forwarding mailboxes: {summary.observed}")
    print(f"  Records in history:            {summary.store_size}")
    print(f"  New since window start:        {len(summary.new_records)}")
    print(f"  Duplicate-address records:     {len(summary.duplicate_records)}")
    for r in summary.new_records:
        flag = "  ⚠ DUPLICATE" if r in summary.duplicate_records else ""
        print(f"    + {r.name:<40s} -> {r.forwarding_address}{flag}")

    report = summary.remediation
    if report is not None:
        print(f"\n  Remediation (capacity {report.capacity}):")
        for o in report.outcomes:
            print(f"    {o.identity:<40s} {o.status.upper()}")
            for s in o.failed_steps():
                print(f"        ✗ {s.name}: {s.detail}")
            if o.error:
                print(f"        ✗ {o.error}")
            if o.new_password:
                print(f"        new password: {o.new_password}")
        if report.capacity_exceeded:
            print(f"  ⚠  {len(report.overflow)} identities over capacity need manual follow-up:")
            for r in report.overflow:
                print(f"       - {r.name}")

    if summary.unblocks:
        print("\n  Unblock sweep:")
        for u in summary.unblocks:
            print(f"    {u.identity:<40s} {u.describe()}")

    if summary.notify_error:
        print(f"\n  ⚠  Summary email failed: {summary.notify_error}")
    elif summary.notified:
        print("\n  ✉  Summary email sent.")


async def _cmd_block(args: argparse.Namespace, config: EngineConfig) -> int:
    run_id = _new_run_id()
    journal = RunJournal(config.store.journal_path)
    journal.start_run(run_id, "block", {"identities": args.identities})
    failures = 0
    async with TenantSession(config) as session:
        lifecycle = BlockLifecycle(session.actions())
        for identity in args.identities:
            try:
                outcome = await lifecycle.block(identity, disable_protocols=not args.keep_protocols)
                print(f"  ✅ {identity}: blocked at {outcome.blocked_at:%Y-%m-%d %H:%M:%S} UTC")
                journal.record_action(run_id, identity, "block", "blocked", {"blocked_at": outcome.blocked_at})
            except (NotFound, GraphAPIError, ChangeBlocked) as e:
                failures += 1
                print(f"  ❌ {identity}: {e}")
                journal.record_action(run_id, identity, "block", "failed", {"error": str(e)})
    journal.complete_run(run_id, status="completed" if not failures else "completed_with_errors")
    return 1 if failures else 0


async def _cmd_unblock(args: argparse.Namespace, config: EngineConfig) -> int:
    run_id = _new_run_id()
    journal = RunJournal(config.store.journal_path)
    journal.start_run(run_id, "unblock", {"all": args.all, "identities": args.identities, "force": args.force})
    options = _sweep_options(config, args)

    async with TenantSession(config) as session:
        lifecycle = BlockLifecycle(session.actions())
        if args.all:
            outcomes = await run_unblock_sweep(lifecycle, options, journal, run_id)
        else:
            outcomes = []
            for identity in args.identities:
                try:
                    outcome = await lifecycle.unblock(
                        identity,
                        enable_protocols=options.enable_protocols,
                        min_elapsed=options.min_elapsed,
                        force=options.force,
                    )
                except (NotFound, GraphAPIError, ChangeBlocked) as e:
                    print(f"  ❌ {identity}: {e}")
                    journal.record_action(run_id, identity, "unblock", "failed", {"error": str(e)})
                    continue
                outcomes.append(outcome)
            _journal_unblocks(journal, run_id, outcomes)

    for o in outcomes:
        icon = "✅" if o.unblocked else "⏳"
        print(f"  {icon} {o.identity}: {o.describe()}")
        for w in o.warnings:
            print(f"      ⚠  {w}")
    journal.complete_run(run_id)
    return 0


def _cmd_report(args: argparse.Namespace, config: EngineConfig) -> int:
    try:
        store = CsvForwardingStore(config.store.history_path).load()
        records = query(
            store,
            newer_than=args.new_since,
            older_than=args.stale_since,
            use_last_seen=args.use_last_seen,
            only_duplicates=args.duplicates,
        )
    except (StoreFormatError, QueryError) as e:
        print(f"❌ {e}")
        return 1

    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return 0

    print(f"\n  {'Name':<40s} {'Forwarding address':<40s} {'First seen':<17s} {'Last seen':<17s}")
    print(f"  {'─'*40} {'─'*40} {'─'*17} {'─'*17}")
    for r in sorted(records, key=lambda r: (r.forwarding_address.lower(), r.name)):
        print(f"  {r.name:<40s} {r.forwarding_address:<40s} "
              f"{r.first_seen:%Y-%m-%d %H:%M}  {r.last_seen:%Y-%m-%d %H:%M}")
    print(f"\n  {len(records)} record(s)\n")
    return 0


async def _cmd_logs(args: argparse.Namespace, config: EngineConfig) -> int:
    out = args.out or Path(config.store.data_dir) / f"{args.kind}_{_new_run_id()}.jsonl"
    async with TenantSession(config) as session:
        records = await AuditLogFetcher(session.graph).fetch(
            args.kind, args.since, until=args.until, user=args.user, limit=args.limit,
        )
    export_jsonl(records, out)
    print(f"  📄 {len(records)} {args.kind} records written to {out}")
    return 0


def _cmd_history(args: argparse.Namespace, config: EngineConfig) -> int:
    journal = RunJournal(config.store.journal_path)
    if args.identity:
        for a in journal.get_actions(identity=args.identity):
            ts = datetime.fromtimestamp(a["timestamp"], timezone.utc)
            print(f"  {ts:%Y-%m-%d %H:%M}  {a['run_id']}  {a['action']:<10s} {a['status']}")
        return 0
    for run in journal.get_run_history(limit=args.limit):
        started = datetime.fromtimestamp(run["started_at"], timezone.utc)
        print(f"  {started:%Y-%m-%d %H:%M}  {run['run_id']}  {run['command']:<8s} {run['status']}")
    return 0


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

OFFLINE_COMMANDS = {"report", "history"}


async def main_async(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "profile":
        return _cmd_profile(args)

    _configure_logging(args.verbose)

    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            print(f"\n❌ Profile '{args.profile}' not found. Use 'profile list' to see available profiles.")
            return 1
    elif not args.config and not args.tenant_id:
        profile = resolve_profile()

    if args.command in OFFLINE_COMMANDS:
        try:
            config = EngineConfig.from_file(args.config) if args.config else EngineConfig()
        except (OSError, ValueError) as e:
            print(f"\n❌ Cannot load configuration: {e}")
            return 1
        if args.data_dir:
            config.store.data_dir = str(args.data_dir)
        if args.command == "report":
            return _cmd_report(args, config)
        return _cmd_history(args, config)

    try:
        config = build_config(args, profile)
    except (ConfigError, OSError, ValueError) as e:
        print(f"\n❌ {e}")
        return 1
    if not config.auth.organization:
        print("\n❌ The tenant's initial domain is required (--organization or profile).")
        return 1

    tenant_name = (profile.tenant_display_name if profile else "") or config.auth.organization

    print("=" * 70)
    print(f" Forwarding Guard v{__version__}")
    print(f" Mode: {'DRY RUN' if config.dry_run else 'LIVE'}")
    print("=" * 70)

    try:
        if args.command == "scan":
            return await _cmd_scan(args, config, tenant_name)
        if args.command == "block":
            return await _cmd_block(args, config)
        if args.command == "unblock":
            if bool(args.all) == bool(args.identities):
                print("\n❌ Give either one or more identities or --all.")
                return 1
            return await _cmd_unblock(args, config)
        if args.command == "logs":
            return await _cmd_logs(args, config)
    except AuthenticationError as e:
        print(f"\n❌ {e}")
        _print_required_permissions()
        return 1
    except (GraphAPIError, ValueError) as e:
        print(f"\n❌ {e}")
        return 1
    return 0


def main() -> None:
    """Synchronous entry point for `python -m forwarding_guard`."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
