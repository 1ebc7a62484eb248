"""
Snaptrail CLI

Inspect and maintain a local history root from the shell. Every command
outputs structured JSON when --json is passed; human-readable output is
the default.

Usage:
    snaptrail [-C ROOT] record FILE_ID PATH [--source SOURCE]
    snaptrail log FILE_ID [--limit N] [--accepted | --pending] [--source SOURCE]
    snaptrail show SNAPSHOT_ID [--content]
    snaptrail files
    snaptrail limits
    snaptrail cleanup [--ttl-days DAYS] [--max-size BYTES] [--max-count N]
    snaptrail approve FILE_ID [--final PATH]
    snaptrail discard FILE_ID [--restore PATH]
    snaptrail delete SNAPSHOT_ID [SNAPSHOT_ID ...]
    snaptrail diff SNAPSHOT_A SNAPSHOT_B
    snaptrail stats
"""

import argparse
import difflib
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import snaptrail as _snaptrail_pkg

from .diff import compute_detailed_diff
from .errors import BatchDeleteError, SnapshotNotFound
from .history import STORE_KINDS, LocalHistory
from .models import SnapshotFilters, SnapshotSource


@contextmanager
def open_history(args):
    """Open a LocalHistory with guaranteed cleanup on any exit path."""
    history = LocalHistory.open(Path(args.path or "."), store=args.store)
    if history.config.verbose_logging and not getattr(args, "quiet", False):
        logging.getLogger("snaptrail").setLevel(logging.DEBUG)
    try:
        yield history
    finally:
        history.close()


def format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def short_id(snapshot_id: str) -> str:
    return snapshot_id[:8] if snapshot_id else "none"


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


def get_verbosity(args) -> int:
    """Return verbosity level: 0=quiet, 1=normal, 2=verbose."""
    if getattr(args, "json", False):
        return 1
    if getattr(args, "verbose", False):
        return 2
    if getattr(args, "quiet", False):
        return 0
    return 1


def _display_id(snapshot_id: str, verbosity: int) -> str:
    if verbosity >= 2:
        return snapshot_id
    return short_id(snapshot_id)


def _format_size(n: int) -> str:
    for unit in ("B", "KiB", "MiB"):
        if n < 1024:
            return f"{n:.0f} {unit}" if unit == "B" else f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} GiB"


def _diff_summary(snapshot) -> str:
    if snapshot.diff_info is None:
        return "initial"
    d = snapshot.diff_info
    return f"+{d.added_lines} -{d.removed_lines} ~{d.modified_lines}"


def _flags(snapshot) -> str:
    flags = []
    if snapshot.accepted:
        flags.append("accepted")
    if snapshot.discarded:
        flags.append("discarded")
    if snapshot.is_tombstone:
        flags.append("deleted")
    return f" [{', '.join(flags)}]" if flags else ""


def cmd_record(args):
    if args.content_path == "-":
        content = sys.stdin.read()
    else:
        content = Path(args.content_path).read_text(encoding="utf-8")

    with open_history(args) as history:
        snapshot = history.create_snapshot(args.file_id, content, args.source)

        if args.json:
            print_json(snapshot.to_dict() if snapshot else None)
        elif snapshot is None:
            print("Snapshot creation is paused; nothing recorded.")
        elif get_verbosity(args) == 0:
            print(snapshot.id)
        else:
            print(f"Recorded {snapshot.id}  ({_diff_summary(snapshot)})")


def cmd_log(args):
    v = get_verbosity(args)
    accepted = True if args.accepted else (False if args.pending else None)
    filters = SnapshotFilters(
        accepted=accepted,
        source=SnapshotSource(args.source) if args.source else None,
        limit=args.limit,
    )
    with open_history(args) as history:
        snapshots = history.get_snapshots_for_file(args.file_id, filters)

        if args.json:
            print_json([s.to_dict() for s in snapshots])
        elif v == 0:
            for s in snapshots:
                print(s.id)
        elif not snapshots:
            print("No snapshots found.")
        else:
            for s in snapshots:
                icon = "✓" if s.accepted else ("✗" if s.discarded else "◉")
                print(
                    f"{icon} {_display_id(s.id, v)}  {format_time(s.timestamp)}  "
                    f"{s.source.value:<10}  {_diff_summary(s)}{_flags(s)}"
                )
                if v >= 2:
                    print(f"  hash: {s.content_hash}")
                    print(f"  size: {s.metadata.size} bytes, {s.metadata.line_count} lines")


def cmd_show(args):
    with open_history(args) as history:
        snapshot = history.get_snapshot(args.snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(args.snapshot_id)
        content = history.get_snapshot_content(snapshot) if args.content else None

        if args.json:
            data = snapshot.to_dict()
            if content is not None:
                data["content"] = content
            print_json(data)
        elif content is not None:
            sys.stdout.write(content)
        else:
            print(f"Snapshot:  {snapshot.id}")
            print(f"File:      {snapshot.file_id}")
            print(f"Created:   {format_time(snapshot.timestamp)}")
            print(f"Source:    {snapshot.source.value}")
            print(f"Hash:      {snapshot.content_hash}")
            print(f"Size:      {snapshot.metadata.size} bytes, {snapshot.metadata.line_count} lines")
            print(f"Diff:      {_diff_summary(snapshot)}")
            if snapshot.diff_info and snapshot.diff_info.previous_snapshot_id:
                print(f"Previous:  {snapshot.diff_info.previous_snapshot_id}")
            print(f"Accepted:  {'yes' if snapshot.accepted else 'no'}")
            if snapshot.accepted_timestamp:
                print(f"           {format_time(snapshot.accepted_timestamp)}")
            if snapshot.discarded:
                print("Discarded: yes")
            if snapshot.is_tombstone:
                print("Deleted:   yes (file removed)")


def cmd_files(args):
    with open_history(args) as history:
        entries = []
        for file_id in history.get_tracked_files():
            chain = history.get_snapshots_for_file(file_id)
            entries.append({
                "file_id": file_id,
                "snapshots": len(chain),
                "pending": sum(1 for s in chain if not s.accepted),
                "last_change": chain[0].timestamp if chain else None,
            })

        if args.json:
            print_json(entries)
        elif get_verbosity(args) == 0:
            for e in entries:
                print(e["file_id"])
        elif not entries:
            print("No tracked files.")
        else:
            for e in entries:
                pending = f", {e['pending']} pending" if e["pending"] else ""
                print(f"  {e['file_id']}  ({e['snapshots']} snapshots{pending})")


def cmd_limits(args):
    with open_history(args) as history:
        status = history.check_limits()
        config = history.config

        if args.json:
            print_json(status.to_dict())
        else:
            def mark(flag):
                return "EXCEEDED" if flag else "ok"

            print(
                f"Size:   {mark(status.size_exceeded):<8}  "
                f"{_format_size(status.current_size)} / {_format_size(status.max_size)}"
            )
            print(
                f"Count:  {mark(status.count_exceeded):<8}  "
                f"{status.files_with_count_exceeded} file(s) over {config.max_snapshots_per_file}"
            )
            print(
                f"TTL:    {mark(status.ttl_exceeded):<8}  "
                f"{status.snapshots_older_than_ttl} snapshot(s) older than {config.ttl_days} days"
            )


def cmd_cleanup(args):
    with open_history(args) as history:
        config = history.config
        if args.ttl_days is not None:
            config.ttl_days = args.ttl_days
        if args.max_size is not None:
            config.max_storage_size = args.max_size
        if args.max_count is not None:
            config.max_snapshots_per_file = args.max_count

        report = history.run_cleanup()

        if args.json:
            data = report.to_dict()
            data["total_deleted"] = report.total_deleted
            print_json(data)
        else:
            print(f"Deleted {report.total_deleted} snapshot(s):")
            print(f"  by TTL:   {report.deleted_by_ttl}")
            print(f"  by size:  {report.deleted_by_size}")
            print(f"  by count: {report.deleted_by_count}")
            for policy, error in report.errors.items():
                print(f"  error ({policy}): {error}", file=sys.stderr)


def cmd_approve(args):
    final_content = None
    if args.final:
        final_content = Path(args.final).read_text(encoding="utf-8")

    with open_history(args) as history:
        result = history.approve_all(args.file_id, final_content)

        if args.json:
            print_json(result.to_dict())
        elif result.kept is None:
            print("All changes are already approved.")
        else:
            print(f"Approved {result.kept.id}")
            if result.deleted_ids:
                print(f"  Squashed {len(result.deleted_ids)} intermediate snapshot(s)")
            if result.failed_ids:
                print(f"  Failed to delete: {', '.join(result.failed_ids)}", file=sys.stderr)


def cmd_discard(args):
    with open_history(args) as history:
        result = history.discard_all(args.file_id)
        if result.restore_content is not None and args.restore:
            Path(args.restore).write_text(result.restore_content, encoding="utf-8")

        if args.json:
            data = result.to_dict()
            data["restored_to"] = args.restore if result.restore_content is not None else None
            print_json(data)
        elif result.baseline is None and result.kept is None:
            print("No snapshots found to revert to.")
        else:
            target = result.baseline or result.kept
            print(f"Discarded changes; restore target is {target.id} ({format_time(target.timestamp)})")
            if result.deleted_ids:
                print(f"  Deleted {len(result.deleted_ids)} intermediate snapshot(s)")
            if args.restore:
                print(f"  Restored content written to {args.restore}")


def cmd_delete(args):
    with open_history(args) as history:
        try:
            deleted = history.delete_snapshots(args.snapshot_ids)
            failed = {}
        except BatchDeleteError as e:
            deleted = len(args.snapshot_ids) - len(e.errors)
            failed = e.errors

        if args.json:
            print_json({"deleted": deleted, "errors": failed})
        else:
            print(f"Deleted {deleted} snapshot(s)")
            for sid, msg in failed.items():
                print(f"  {sid}: {msg}", file=sys.stderr)
        if failed:
            sys.exit(1)


def cmd_diff(args):
    with open_history(args) as history:
        a = history.get_snapshot(args.snapshot_a)
        if a is None:
            raise SnapshotNotFound(args.snapshot_a)
        b = history.get_snapshot(args.snapshot_b)
        if b is None:
            raise SnapshotNotFound(args.snapshot_b)

        old = history.get_snapshot_content(a)
        new = history.get_snapshot_content(b)
        diff = "".join(
            difflib.unified_diff(
                old.splitlines(keepends=True),
                new.splitlines(keepends=True),
                fromfile=f"a/{short_id(a.id)}",
                tofile=f"b/{short_id(b.id)}",
            )
        )

        if args.json:
            print_json({
                "from": a.id,
                "to": b.id,
                "hunks": [h.to_dict() for h in compute_detailed_diff(old, new)],
                "diff": diff,
            })
        elif not diff:
            print("No differences.")
        else:
            sys.stdout.write(diff)
            if not diff.endswith("\n"):
                print()


def cmd_stats(args):
    with open_history(args) as history:
        stats = history.stats()
        if args.json:
            print_json(stats)
        else:
            print(f"Root:       {stats['root']}")
            print(f"Version:    {stats['version']}")
            print(f"Snapshots:  {stats['total_snapshots']}")
            print(f"Files:      {stats['tracked_files']}")
            print(f"Size:       {_format_size(stats['total_size'])}")
            if stats["last_cleanup"]:
                print(f"Cleanup:    {format_time(stats['last_cleanup'])}")
            else:
                print("Cleanup:    never")


def _source_choices():
    return [s.value for s in SnapshotSource]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snaptrail",
        description="Snaptrail: local per-file snapshot history",
    )
    ver = _snaptrail_pkg.__version__
    parser.add_argument("--version", "-V", action="version", version=f"snaptrail {ver}")
    parser.add_argument("--path", "-C", default=".", help="History root")
    parser.add_argument("--store", default="json", choices=STORE_KINDS, help="Index backend")
    parser.add_argument("--json", "-j", action="store_true", help="JSON output")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Quiet output")

    sub = parser.add_subparsers(dest="command")

    # record
    p = sub.add_parser("record", help="Record a snapshot of a file's content")
    p.add_argument("file_id", help="File identity (URI or path string)")
    p.add_argument("content_path", help="File to read content from ('-' for stdin)")
    p.add_argument("--source", "-s", default="manual", choices=_source_choices())
    p.set_defaults(func=cmd_record)

    # log
    p = sub.add_parser("log", help="Show a file's snapshot history")
    p.add_argument("file_id")
    p.add_argument("--limit", "-n", type=int, default=None)
    state = p.add_mutually_exclusive_group()
    state.add_argument("--accepted", action="store_true", help="Only accepted snapshots")
    state.add_argument("--pending", action="store_true", help="Only unaccepted snapshots")
    p.add_argument("--source", default=None, choices=_source_choices())
    p.set_defaults(func=cmd_log)

    # show
    p = sub.add_parser("show", help="Show a snapshot")
    p.add_argument("snapshot_id")
    p.add_argument("--content", "-c", action="store_true", help="Print the snapshot's content")
    p.set_defaults(func=cmd_show)

    # files
    p = sub.add_parser("files", help="List tracked files")
    p.set_defaults(func=cmd_files)

    # limits
    p = sub.add_parser("limits", help="Check storage limits")
    p.set_defaults(func=cmd_limits)

    # cleanup
    p = sub.add_parser("cleanup", help="Run TTL, size and count cleanup now")
    p.add_argument("--ttl-days", type=float, default=None)
    p.add_argument("--max-size", type=int, default=None, help="Max storage size in bytes")
    p.add_argument("--max-count", type=int, default=None, help="Max snapshots per file")
    p.set_defaults(func=cmd_cleanup)

    # approve
    p = sub.add_parser("approve", help="Approve all changes for a file")
    p.add_argument("file_id")
    p.add_argument("--final", default=None, help="Fold this file's content into the approved snapshot")
    p.set_defaults(func=cmd_approve)

    # discard
    p = sub.add_parser("discard", help="Discard all changes for a file")
    p.add_argument("file_id")
    p.add_argument("--restore", default=None, help="Write the restored content to this path")
    p.set_defaults(func=cmd_discard)

    # delete
    p = sub.add_parser("delete", help="Delete snapshots")
    p.add_argument("snapshot_ids", nargs="+")
    p.set_defaults(func=cmd_delete)

    # diff
    p = sub.add_parser("diff", help="Diff two snapshots")
    p.add_argument("snapshot_a")
    p.add_argument("snapshot_b")
    p.set_defaults(func=cmd_diff)

    # stats
    p = sub.add_parser("stats", help="Show storage statistics")
    p.set_defaults(func=cmd_stats)

    return parser


def _configure_logging(args):
    if getattr(args, "verbose", False):
        level = logging.DEBUG
    elif getattr(args, "quiet", False) or getattr(args, "json", False):
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _error_hint(msg: str) -> str | None:
    """Return a hint for common error messages, or None."""
    lower = msg.lower()
    if "snapshot not found" in lower:
        return "Hint: Use 'snaptrail log FILE_ID' to see a file's snapshots."
    if "invalid path" in lower:
        return "Hint: The index may be corrupt or tampered with; content refs must stay inside the root."
    return None


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args)
    try:
        args.func(args)
    except Exception as e:
        msg = str(e)
        if getattr(args, "json", False):
            print_json({"error": msg})
        else:
            print(f"Error: {msg}", file=sys.stderr)
            hint = _error_hint(msg)
            if hint:
                print(f"  {hint}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
