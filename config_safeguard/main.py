"""Command line entry point: ``config-safeguard``."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config_safeguard.__version__ import __version__
from config_safeguard.config import settings
from config_safeguard.config.mappings import DEFAULT_FILE_MAPPINGS, load_mappings
from config_safeguard.control import OperationOptions
from config_safeguard.domain.models import Verdict
from config_safeguard.logging import LoggerFactory, setup_logging
from config_safeguard.recovery import RecoveryContext, RecoveryRegistry
from config_safeguard.services.commands import CommandRunner
from config_safeguard.session import (
    INTERRUPTED_EXIT_CODE,
    ProtectedSession,
    cancel_on_signals,
)
from config_safeguard.storage.exceptions import SafeguardError
from config_safeguard.storage.ledger import RecoveryLedger
from config_safeguard.storage.path_policy import PathPolicy
from config_safeguard.storage.rollback_store import RollbackStore
from config_safeguard.storage.snapshot_store import DEFAULT_DESCRIPTION, SnapshotStore

log = LoggerFactory.for_system()


def prompt_yes_no(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


@dataclass
class Runtime:
    """Paths and switches resolved from the command line and settings."""

    backup_root: Path
    system_root: Path
    log_dir: Path
    options: OperationOptions
    runner: CommandRunner

    @property
    def ledger(self) -> RecoveryLedger:
        return RecoveryLedger(self.log_dir / "recovery.log")

    def snapshots(self, mappings_file: Optional[Path] = None) -> SnapshotStore:
        mappings = load_mappings(mappings_file) if mappings_file else DEFAULT_FILE_MAPPINGS
        return SnapshotStore(
            self.backup_root,
            runner=self.runner,
            mappings=mappings,
            system_root=self.system_root,
            options=self.options,
        )

    def rollbacks(self) -> RollbackStore:
        return RollbackStore(
            self.backup_root,
            runner=self.runner,
            ledger=self.ledger,
            system_root=self.system_root,
            max_rollbacks=settings.get_int("max_rollbacks", settings.DEFAULT_MAX_ROLLBACKS),
            journal_window_hours=settings.get_int(
                "journal_window_hours", settings.DEFAULT_JOURNAL_WINDOW_HOURS
            ),
            options=self.options,
        )

    def recovery(self) -> RecoveryRegistry:
        context = RecoveryContext.from_settings(
            self.runner,
            system_root=self.system_root,
            log_dir=self.log_dir,
            cancel=self.options.cancel,
        )
        return RecoveryRegistry(context)


def _runtime(args: argparse.Namespace) -> Runtime:
    return Runtime(
        backup_root=Path(args.backup_root or settings.get_path("backup_root")),
        system_root=Path(args.system_root or settings.get_path("system_root", "/")),
        log_dir=Path(args.log_dir or settings.get_path("log_dir")),
        options=OperationOptions(
            dry_run=args.dry_run,
            force=args.force,
            confirm=None if args.force else prompt_yes_no,
        ),
        runner=CommandRunner(
            default_timeout=settings.get_int(
                "command_timeout_seconds", settings.DEFAULT_COMMAND_TIMEOUT_SECONDS
            )
        ),
    )


def _finish(runtime: Runtime, ok: bool) -> int:
    if runtime.options.cancel.is_set():
        return INTERRUPTED_EXIT_CODE
    if not ok:
        print(f"See logs in {runtime.log_dir}", file=sys.stderr)
    return 0 if ok else 1


# ==============================================================================
# snapshot
# ==============================================================================


def cmd_snapshot_create(args: argparse.Namespace, runtime: Runtime) -> int:
    store = runtime.snapshots(args.mappings)
    with cancel_on_signals(runtime.options.cancel):
        result = store.create(args.description)
    if result.dry_run:
        for path in result.planned:
            print(f"would back up {path}")
        print(f"{len(result.planned)} file(s) would be backed up")
        return 0
    print(f"Snapshot: {result.snapshot_id}")
    print(
        f"Backed up: {result.backed_up}  Failed: {result.failed}  "
        f"Skipped: {result.skipped}  Rejected: {result.rejected}  Total: {result.total}"
    )
    print(f"Location: {result.path}")
    return _finish(runtime, result.status == "success")


def cmd_snapshot_list(args: argparse.Namespace, runtime: Runtime) -> int:
    infos = runtime.snapshots().list(verify=not args.no_verify)
    if not infos:
        print("No snapshots found")
        return 0
    for info in infos:
        state = "valid" if info.valid else "INVALID"
        print(f"{info.snapshot_id}  {info.created_at}  {info.file_count} file(s)  {state}")
        if info.description:
            print(f"    {info.description}")
    return 0


def cmd_snapshot_validate(args: argparse.Namespace, runtime: Runtime) -> int:
    report = runtime.snapshots().validate(args.snapshot_id)
    for warning in report.warnings:
        print(f"warning: {warning}")
    for error in report.errors:
        print(f"error: {error}")
    print(
        f"{args.snapshot_id}: {report.files_checked} file(s) checked, "
        f"{len(report.errors)} error(s)"
    )
    return 0 if report.valid else 1


def cmd_snapshot_restore(args: argparse.Namespace, runtime: Runtime) -> int:
    store = runtime.snapshots()
    with cancel_on_signals(runtime.options.cancel):
        report = store.restore(args.snapshot_id)
    if report.declined:
        print("Restore cancelled")
        return 1
    prefix = "would restore" if report.dry_run else "restored"
    for path in report.restored:
        print(f"{prefix} {path}")
    for path in report.failed:
        print(f"failed {path}")
    for path in report.rejected:
        print(f"rejected {path}")
    for path in report.safety_copies:
        print(f"safety copy {path}")
    for warning in report.warnings:
        print(f"warning: {warning}")
    print(
        f"Restored: {len(report.restored)}  Failed: {len(report.failed)}  "
        f"Skipped: {len(report.skipped)}  Rejected: {len(report.rejected)}  "
        f"Status: {report.status}"
    )
    return _finish(runtime, report.status == "success")


def cmd_snapshot_delete(args: argparse.Namespace, runtime: Runtime) -> int:
    deleted = runtime.snapshots().delete(args.snapshot_id)
    if deleted:
        print(f"Deleted snapshot {args.snapshot_id}")
    return 0 if deleted or runtime.options.dry_run else 1


# ==============================================================================
# rollback
# ==============================================================================


def cmd_rollback_create(args: argparse.Namespace, runtime: Runtime) -> int:
    store = runtime.rollbacks()
    with cancel_on_signals(runtime.options.cancel):
        point = store.create(args.name, args.description)
    if runtime.options.dry_run:
        print(f"Would create rollback point {point.id}")
        return 0
    print(f"Rollback point: {point.id}")
    print(f"Location: {point.path}")
    for warning in point.capture_warnings:
        print(f"warning: {warning}")
    return _finish(runtime, True)


def cmd_rollback_list(args: argparse.Namespace, runtime: Runtime) -> int:
    store = runtime.rollbacks()
    entries = store.list()
    if not entries:
        print("No rollback points found")
        return 0
    last = store.last_rollback_id()
    for entry in entries:
        marker = "*" if entry.id == last else " "
        print(f"{marker} {entry.id}  {entry.created}  [{entry.kind}]  {entry.description}")
    return 0


def cmd_rollback_restore(args: argparse.Namespace, runtime: Runtime) -> int:
    store = runtime.rollbacks()
    rollback_id = args.rollback_id or store.last_rollback_id()
    if rollback_id is None:
        print("No rollback point to restore", file=sys.stderr)
        return 1
    with cancel_on_signals(runtime.options.cancel):
        report = store.restore(rollback_id)
    if report.declined:
        print("Rollback cancelled")
        return 1
    prefix = "would replace" if report.dry_run else "replaced"
    for path in report.replaced:
        print(f"{prefix} {path}")
    for path in report.failed:
        print(f"failed {path}")
    for warning in report.warnings:
        print(f"warning: {warning}")
    if report.emergency_id:
        print(f"Emergency rollback point: {report.emergency_id}")
    if not report.dry_run:
        print("A reboot may be required for all changes to take effect")
    return _finish(runtime, report.status == "success")


def cmd_rollback_delete(args: argparse.Namespace, runtime: Runtime) -> int:
    deleted = runtime.rollbacks().delete(args.rollback_id)
    if deleted:
        print(f"Deleted rollback point {args.rollback_id}")
    return 0 if deleted or runtime.options.dry_run else 1


def cmd_rollback_cleanup(args: argparse.Namespace, runtime: Runtime) -> int:
    removed = runtime.rollbacks().cleanup()
    verb = "Would remove" if runtime.options.dry_run else "Removed"
    for rollback_id in removed:
        print(f"{verb} {rollback_id}")
    print(f"{verb} {len(removed)} old rollback point(s)")
    return 0


# ==============================================================================
# recover
# ==============================================================================


def cmd_recover_run(args: argparse.Namespace, runtime: Runtime) -> int:
    registry = runtime.recovery()
    with cancel_on_signals(runtime.options.cancel):
        outcome = registry.execute(args.tag, *args.details)
    for index, step in enumerate(outcome.step_results, start=1):
        state = "ok" if step.succeeded else "FAILED"
        line = f"{index}. {step.name}: {state}"
        if step.detail:
            line += f" ({step.detail})"
        print(line)
    print(f"{outcome.mechanism}: {outcome.verdict.value}, {outcome.summary()}")
    return _finish(runtime, outcome.verdict is Verdict.SUCCESS)


def cmd_recover_list(args: argparse.Namespace, runtime: Runtime) -> int:
    for procedure in runtime.recovery().list_mechanisms():
        print(
            f"{procedure.failure_class.value:<26} threshold {procedure.threshold}%  "
            f"{procedure.description}"
        )
    return 0


def cmd_recover_history(args: argparse.Namespace, runtime: Runtime) -> int:
    lines = runtime.recovery().history(args.limit)
    if not lines:
        print("No recovery history")
    for line in lines:
        print(line)
    return 0


# ==============================================================================
# audit / protect / version
# ==============================================================================


def cmd_audit(args: argparse.Namespace, runtime: Runtime) -> int:
    mappings = load_mappings(args.mappings) if args.mappings else DEFAULT_FILE_MAPPINGS
    violations = PathPolicy().audit_mappings(mappings)
    for violation in violations:
        print(f"violation: {violation}")
    if violations:
        print(f"{len(violations)} mapping(s) touch protected user data")
        return 1
    print(f"{len(mappings)} mapping(s) checked, no protected paths")
    return 0


def cmd_protect(args: argparse.Namespace, runtime: Runtime) -> int:
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("protect needs a command to run", file=sys.stderr)
        return 1
    session = ProtectedSession(
        runtime.rollbacks(),
        name=args.name,
        confirm=prompt_yes_no,
        create_point=not runtime.options.dry_run,
    )
    with session:
        returncode = session.run_command(command)
    return session.exit_code(returncode)


def cmd_version(args: argparse.Namespace, runtime: Runtime) -> int:
    print(f"config-safeguard {__version__}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="config-safeguard",
        description="Configuration snapshots, rollback points and automated recovery",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("-n", "--dry-run", action="store_true", help="Report without changing anything")
    parser.add_argument("-f", "--force", action="store_true", help="Skip confirmation prompts")
    parser.add_argument("--backup-root", type=Path, help="Where snapshots and rollbacks are kept")
    parser.add_argument("--system-root", type=Path, help="Root of the system to operate on")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    commands = parser.add_subparsers(dest="command_group", required=True)

    snapshot = commands.add_parser("snapshot", help="Configuration file snapshots")
    snapshot_cmds = snapshot.add_subparsers(dest="action", required=True)
    create = snapshot_cmds.add_parser("create", help="Capture the mapped configuration files")
    create.add_argument("description", nargs="?", default=DEFAULT_DESCRIPTION)
    create.add_argument("--mappings", type=Path, help="File of source:target:description lines")
    create.set_defaults(handler=cmd_snapshot_create)
    listing = snapshot_cmds.add_parser("list", help="List snapshots")
    listing.add_argument("--no-verify", action="store_true", help="Skip checksum validation")
    listing.set_defaults(handler=cmd_snapshot_list)
    for name, handler, text in (
        ("validate", cmd_snapshot_validate, "Check a snapshot's checksums"),
        ("restore", cmd_snapshot_restore, "Restore files from a snapshot"),
        ("delete", cmd_snapshot_delete, "Delete a snapshot"),
    ):
        sub = snapshot_cmds.add_parser(name, help=text)
        sub.add_argument("snapshot_id")
        sub.set_defaults(handler=handler)

    rollback = commands.add_parser("rollback", help="System-wide rollback points")
    rollback_cmds = rollback.add_subparsers(dest="action", required=True)
    create = rollback_cmds.add_parser("create", help="Capture a rollback point")
    create.add_argument("name")
    create.add_argument("description", nargs="?", default="")
    create.set_defaults(handler=cmd_rollback_create)
    rollback_cmds.add_parser("list", help="List rollback points").set_defaults(
        handler=cmd_rollback_list
    )
    restore = rollback_cmds.add_parser("restore", help="Restore a rollback point (default: last)")
    restore.add_argument("rollback_id", nargs="?")
    restore.set_defaults(handler=cmd_rollback_restore)
    delete = rollback_cmds.add_parser("delete", help="Delete a rollback point")
    delete.add_argument("rollback_id")
    delete.set_defaults(handler=cmd_rollback_delete)
    rollback_cmds.add_parser("cleanup", help="Apply the retention limit").set_defaults(
        handler=cmd_rollback_cleanup
    )

    recover = commands.add_parser("recover", help="Automated recovery procedures")
    recover_cmds = recover.add_subparsers(dest="action", required=True)
    run = recover_cmds.add_parser("run", help="Run the procedure for a failure class")
    run.add_argument("tag", help="Failure class, e.g. service_start_failure")
    run.add_argument("details", nargs="*", help="Procedure arguments, e.g. a service name")
    run.set_defaults(handler=cmd_recover_run)
    recover_cmds.add_parser("list", help="List recovery procedures").set_defaults(
        handler=cmd_recover_list
    )
    history = recover_cmds.add_parser("history", help="Show recent recovery log lines")
    history.add_argument("-l", "--limit", type=int, default=20)
    history.set_defaults(handler=cmd_recover_history)

    audit = commands.add_parser("audit", help="Check the file mappings for protected paths")
    audit.add_argument("--mappings", type=Path, help="File of source:target:description lines")
    audit.set_defaults(handler=cmd_audit)

    protect = commands.add_parser(
        "protect", help="Run a command with a rollback point and interrupt handling"
    )
    protect.add_argument("--name", default="session", help="Rollback point name")
    protect.add_argument("command", nargs=argparse.REMAINDER)
    protect.set_defaults(handler=cmd_protect)

    commands.add_parser("version", help="Show the version").set_defaults(handler=cmd_version)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    runtime = _runtime(args)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=runtime.log_dir)
    log.debug(f"config-safeguard {__version__} starting: {args.command_group}")

    try:
        return args.handler(args, runtime)
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return INTERRUPTED_EXIT_CODE
    except (SafeguardError, ValueError) as error:
        log.error(str(error))
        print(f"Error: {error}", file=sys.stderr)
        return 1
    except OSError as error:
        log.opt(exception=error).error(f"{type(error).__name__}: {error}")
        print(f"Error: {error}", file=sys.stderr)
        print(f"See logs in {runtime.log_dir}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
