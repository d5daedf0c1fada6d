"""
Command-line interface for inspecting and editing auto-installer state.

The daemon keeps its state in memory and rewrites the state file after
every change, so edits made here while it runs are overwritten. Stop the
daemon before using ``reset`` or ``retry``.
"""

import sys
import argparse
import json
from pathlib import Path

from auto_installer.atomic import SingletonLock
from auto_installer.config import ConfigManager
from auto_installer.models import RecordStatus
from auto_installer.state_store import StateStore


def _open_store(args) -> StateStore:
    config = ConfigManager(args.config).config
    store = StateStore(config.state_path, max_entries=config.max_state_entries)
    store.load()
    return store


def _warn_if_running(args) -> None:
    config = ConfigManager(args.config).config
    lock = SingletonLock(config.lock_dir)
    if lock.holder_alive():
        print(f"⚠️  Daemon is running (pid {lock.read_holder()}); it will overwrite this change.")
        print("   Stop it first, then re-run this command.")


def _format_time(value) -> str:
    return value.isoformat(timespec="seconds") if value else "-"


def cmd_status(args):
    """Show daemon and state summary."""
    config = ConfigManager(args.config).config
    store = _open_store(args)
    lock = SingletonLock(config.lock_dir)

    print("=" * 60)
    print("📦 Auto-Installer Status")
    print("=" * 60)
    if lock.holder_alive():
        print(f"Daemon:        running (pid {lock.read_holder()})")
    else:
        print("Daemon:        not running")
    print(f"Downloads:     {config.downloads_dir}")
    print(f"Install dir:   {config.install_dir}")
    print(f"State file:    {config.state_path}")
    print(f"Last update:   {_format_time(store.snapshot.updated_at)}")

    stats = store.stats()
    print()
    print(f"Records:       {stats['total']}")
    for status in RecordStatus:
        print(f"  {status.value:<11} {stats[status.value]}")
    return 0


def cmd_list(args):
    """List state records, most recently tried first."""
    store = _open_store(args)
    entries = store.entries

    keys = sorted(
        entries,
        key=lambda k: _format_time(entries[k].last_tried_at),
        reverse=True,
    )
    if args.status:
        keys = [k for k in keys if entries[k].status.value == args.status]

    if not keys:
        print("No records")
        return 0

    for key in keys:
        record = entries[key]
        name = Path(record.source_path).name if record.source_path else "?"
        print(f"{record.status.value:<8} {record.attempts:>3}  {_format_time(record.last_tried_at)}  {name}")
        print(f"         {key}")
    return 0


def cmd_show(args):
    """Print one record as JSON."""
    store = _open_store(args)
    record = store.get(args.key)
    if record is None:
        print(f"❌ No record for key '{args.key}'")
        return 1

    print(json.dumps(record.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2))
    return 0


def cmd_reset(args):
    """Forget one record, or every record stuck in running."""
    if not args.key and not args.stuck:
        print("❌ Give a KEY or --stuck")
        return 1

    _warn_if_running(args)
    store = _open_store(args)

    if args.stuck:
        keys = [k for k, r in store.entries.items() if r.status == RecordStatus.RUNNING]
    else:
        keys = [args.key]

    removed = [k for k in keys if store.remove(k)]
    if not removed:
        print("No matching records")
        return 1 if args.key else 0

    store.save()
    for key in removed:
        print(f"✅ Removed {key}")
    return 0


def cmd_retry(args):
    """Make a failed record eligible for another attempt."""
    _warn_if_running(args)
    config = ConfigManager(args.config).config
    store = _open_store(args)
    record = store.get(args.key)
    if record is None:
        print(f"❌ No record for key '{args.key}'")
        return 1
    if record.status != RecordStatus.FAIL:
        print(f"❌ Record is '{record.status.value}', only failed records can be retried")
        return 1
    if record.attempts >= config.max_attempts_per_key:
        print(f"❌ Attempt limit reached ({record.attempts}); use 'reset' to start over")
        return 1

    record.retryable = True
    record.next_retry_at = None
    store.save()
    print(f"✅ {args.key} will be retried on the next rescan")
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Auto-Installer state CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Daemon and state summary
  auto-installer-status status

  # Failed records only
  auto-installer-status list --status fail

  # Inspect a record
  auto-installer-status show 16777220:1234:52428800:1700000000:App.dmg

  # Drop records left running by a crashed daemon
  auto-installer-status reset --stuck
        """
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Show daemon and state summary")
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser("list", help="List state records")
    list_parser.add_argument(
        "--status",
        choices=[s.value for s in RecordStatus],
        default=None,
        help="Only records with this status"
    )
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show one record")
    show_parser.add_argument("key", help="Identity key")
    show_parser.set_defaults(func=cmd_show)

    reset_parser = subparsers.add_parser("reset", help="Remove records so images are processed again")
    reset_parser.add_argument("key", nargs="?", default=None, help="Identity key")
    reset_parser.add_argument(
        "--stuck",
        action="store_true",
        help="Remove every record with status running"
    )
    reset_parser.set_defaults(func=cmd_reset)

    retry_parser = subparsers.add_parser("retry", help="Re-enable retries for a failed record")
    retry_parser.add_argument("key", help="Identity key")
    retry_parser.set_defaults(func=cmd_retry)

    args = parser.parse_args()

    if hasattr(args, 'func'):
        return args.func(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
