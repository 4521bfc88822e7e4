#!/usr/bin/env python3
"""
Gleaner - Local mirror of Hypothesis annotations

Main entry point for Gleaner. Syncs annotations into a local database, edits
tags and groups on the service, and builds a folder/page knowledge base from
the mirror.
"""

import getpass
import logging
import sys
import argparse
from pathlib import Path
from typing import List, Optional

import yaml

from gleaner import __version__
from gleaner.config import ConfigManager, GleanerContext
from gleaner.database import DatabaseManager, TagIndex
from gleaner.errors import ConfigError, GleanerError
from gleaner.filters import parse_datetime, select_indexed
from gleaner.knowledge_base import KnowledgeBaseWriter
from gleaner.models import Annotation, FilterSpec, TagMode
from gleaner.remote import BaseRemote, HypothesisClient
from gleaner.sync import SyncEngine, WriteBackResult, WriteBackStatus
from gleaner.versioning import VersionManager


def setup_logging(config: ConfigManager):
    """Configure logging for the application."""
    level = getattr(logging, str(config.get("logging.level", "INFO")).upper(), logging.INFO)
    format_str = config.get("logging.format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    log_file = config.get("logging.file")

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=format_str, handlers=handlers, force=True)


def make_client(config: ConfigManager, username: str, key: str) -> HypothesisClient:
    """Hypothesis client for the given account."""
    return HypothesisClient(
        username,
        key,
        base_url=config.hypothesis_base_url,
        page_size=config.page_size,
        timeout=config.timeout
    )


def make_remote(context: GleanerContext) -> BaseRemote:
    """Hypothesis client for the configured account."""
    username, key = context.require_credentials()
    return make_client(context.config, username, key)


def confirm(question: str) -> bool:
    """
    Ask the user a yes/no question.

    Returns:
        True if user confirms, False otherwise
    """
    while True:
        response = input(f"\n{question} (yes/no): ").strip().lower()
        if response in ['yes', 'y']:
            return True
        elif response in ['no', 'n']:
            return False
        else:
            print("Please enter 'yes' or 'no'")


def _split(values: Optional[List[str]]) -> tuple:
    """Flatten repeated and comma-separated option values."""
    items = []
    for value in values or []:
        items.extend(part.strip() for part in value.split(",") if part.strip())
    return tuple(items)


def filter_spec_from_args(args: argparse.Namespace) -> FilterSpec:
    """Build a FilterSpec from the shared filter options."""
    return FilterSpec.create(
        from_date=parse_datetime(args.from_date) if args.from_date else None,
        before=parse_datetime(args.before) if args.before else None,
        include_updated=args.include_updated,
        uri=args.uri or "",
        quote=args.quote or "",
        text=args.text or "",
        any=args.any or "",
        tags=_split(args.tags),
        tag_mode=TagMode.ANY if args.any_tag else TagMode.ALL,
        exclude_tags=_split(args.exclude_tags),
        page_only=args.page,
        annotation_only=args.annotation,
        groups=_split(args.groups),
        negate=args.negate
    )


def _report_write_back(results: List[WriteBackResult], verb: str) -> bool:
    """Print write-back outcomes; True if every one succeeded."""
    applied = sum(1 for result in results if result.status == WriteBackStatus.APPLIED)
    skipped = sum(1 for result in results if result.status == WriteBackStatus.SKIPPED)
    print(f"{verb} {applied} annotations ({skipped} unchanged)")
    failures = [result for result in results if not result.ok]
    for result in failures:
        print(f"  {result.describe()}")
    return not failures


# Commands

def run_sync(context: GleanerContext, db: DatabaseManager, index: TagIndex,
             args: argparse.Namespace):
    with make_remote(context) as remote:
        engine = SyncEngine(context, db, index, remote)
        if args.reset:
            report = engine.reset()
        else:
            report = engine.sync(full=args.full)

    print(f"Synced group {report.group}")
    print(f"- {report.added} added")
    print(f"- {report.updated} updated")
    print(f"- {report.removed} removed")
    if report.watermark is not None:
        print(f"Up to date as of {report.watermark.isoformat()}")


def _select(db: DatabaseManager, index: TagIndex, args: argparse.Namespace) -> List[Annotation]:
    spec = filter_spec_from_args(args)
    annotations = select_indexed(db, index, spec)
    logging.info(f"{len(annotations)} annotations match the filter")
    return annotations


def run_tag(context: GleanerContext, db: DatabaseManager, index: TagIndex,
            args: argparse.Namespace):
    annotations = _select(db, index, args)
    if not annotations:
        print("No annotations match")
        return

    action = "Remove" if args.delete else "Add"
    if not args.force and not confirm(f"{action} tag '{args.tag}' on {len(annotations)} annotations?"):
        print("Aborted")
        return

    with make_remote(context) as remote:
        engine = SyncEngine(context, db, index, remote)
        if args.delete:
            results = engine.remove_tag(annotations, args.tag)
        else:
            results = engine.add_tag(annotations, args.tag)

    if not _report_write_back(results, "Untagged" if args.delete else "Tagged"):
        sys.exit(1)


def run_delete(context: GleanerContext, db: DatabaseManager, index: TagIndex,
               args: argparse.Namespace):
    annotations = _select(db, index, args)
    if not annotations:
        print("No annotations match")
        return

    if args.remote:
        question = f"Permanently delete {len(annotations)} annotations from Hypothesis?"
    else:
        question = (f"Remove {len(annotations)} annotations from Gleaner? They are tagged "
                    f"'{context.config.ignore_tag}' on Hypothesis and skipped by later syncs.")
    if not args.force and not confirm(question):
        print("Aborted")
        return

    with make_remote(context) as remote:
        engine = SyncEngine(context, db, index, remote)
        results = engine.delete(annotations, remote=args.remote)

    if not _report_write_back(results, "Deleted" if args.remote else "Ignored"):
        sys.exit(1)


def run_view(context: GleanerContext, db: DatabaseManager, index: TagIndex,
             args: argparse.Namespace):
    writer = KnowledgeBaseWriter(context)
    if args.id:
        annotations = db.get_annotations(args.id)
    else:
        annotations = _select(db, index, args)
    print(writer.view(annotations))


def run_make(context: GleanerContext, db: DatabaseManager, index: TagIndex,
             args: argparse.Namespace):
    writer = KnowledgeBaseWriter(context, directory=args.directory)
    if args.clear and writer.directory.exists() and not args.force:
        if not confirm(f"Delete everything in {writer.directory} before building?"):
            print("Aborted")
            return

    annotations = _select(db, index, args)
    summary = writer.write(annotations, clear=args.clear, index=not args.no_index)

    print(f"Knowledge base written to {summary.directory}")
    print(f"- {summary.page_count} pages")
    print(f"- {len(summary.indexes)} index files")
    print(f"- {summary.annotation_count} annotations")
    for collision in summary.collisions:
        print(f"  Renamed colliding file: {collision.message}")

    if context.config.get("git.auto_commit", False):
        version_manager = VersionManager(str(writer.directory))
        commit = version_manager.commit_build(
            context.config.get("git.commit_message"),
            page_count=summary.page_count,
            annotation_count=summary.annotation_count
        )
        if commit:
            print(f"Committed {commit}")


def run_move(context: GleanerContext, db: DatabaseManager, index: TagIndex,
             args: argparse.Namespace):
    source = args.source or context.group
    if source == args.target:
        raise ConfigError(f"Source and target group are both {source}")

    spec = filter_spec_from_args(args)
    if not args.force and not confirm(f"Move matching annotations from {source} to {args.target}?"):
        print("Aborted")
        return

    with make_remote(context) as remote:
        engine = SyncEngine(context, db, index, remote)
        report = engine.move(source, args.target, spec)

    ok = _report_write_back(report.results, "Moved")
    if report.sync is not None:
        print(f"Group {args.target}: {report.sync.added} added, {report.sync.updated} updated")
    if not ok:
        sys.exit(1)


def run_clear(context: GleanerContext, db: DatabaseManager, index: TagIndex,
              args: argparse.Namespace):
    if not args.force and not confirm(
            f"Delete all {db.count_annotations()} annotations from the local database?"):
        print("Aborted")
        return
    db.clear()
    print("Local database cleared; the next sync pulls everything again")


def run_config(config: ConfigManager, args: argparse.Namespace):
    if args.action == "where":
        print(config.config_path.resolve())
    elif args.action == "get":
        if args.value:
            section = config.get_section(args.value)
            if not section:
                raise ConfigError(f"No configuration section named {args.value!r}")
            print(yaml.safe_dump({args.value: section}, sort_keys=False, allow_unicode=True))
        else:
            print(config.to_yaml())
    elif args.action == "default":
        path = Path(args.file) if args.file else config.config_path
        if path.exists() and not args.force:
            raise ConfigError(f"{path} already exists; use --force to overwrite")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(ConfigManager.default_yaml())
        print(f"Default configuration written to {path}")
    elif args.action == "authorize":
        username = input("Hypothesis username: ").strip()
        key = getpass.getpass("Hypothesis developer key: ").strip()
        if not username or not key:
            raise ConfigError("Both a username and a developer key are required")
        with make_client(config, username, key) as client:
            if not client.authorize():
                raise ConfigError(f"Hypothesis rejected the credentials for {username}")
        config.set("hypothesis.username", username)
        config.set("hypothesis.key", key)
        config.store()
        print(f"Authorized as {username}")
    elif args.action == "group":
        if not args.value:
            raise ConfigError("Give the ID of the group to use")
        username, key = GleanerContext.from_config(config, args.value).require_credentials()
        with make_client(config, username, key) as client:
            groups = client.group_names()
        if args.value not in groups:
            known = ", ".join(f"{group_id} ({name})" for group_id, name in sorted(groups.items()))
            raise ConfigError(f"{username} is not a member of group {args.value!r}. Groups: {known}")
        config.set("hypothesis.group", args.value)
        config.store()
        print(f"Now using group {args.value} ({groups[args.value]})")


COMMANDS = {
    "sync": run_sync,
    "tag": run_tag,
    "delete": run_delete,
    "view": run_view,
    "make": run_make,
    "move": run_move,
    "clear": run_clear,
}


def add_filter_arguments(parser: argparse.ArgumentParser):
    """Options shared by every command that selects annotations."""
    group = parser.add_argument_group("filters")
    group.add_argument("--from", dest="from_date", help="Created on or after this date (ISO or 'today')")
    group.add_argument("--before", help="Created before this date (ISO or 'today')")
    group.add_argument("--include-updated", action="store_true",
                       help="Apply --from/--before to the updated time")
    group.add_argument("--uri", help="URI contains this text")
    group.add_argument("--quote", help="Highlighted text contains this text")
    group.add_argument("--text", help="Annotation text contains this text")
    group.add_argument("--any", help="Quote, text, URI or a tag contains this text")
    group.add_argument("--tags", action="append", help="Required tags (comma-separated, repeatable)")
    group.add_argument("--any-tag", action="store_true", help="Match any of --tags instead of all")
    group.add_argument("--exclude-tags", action="append", help="Tags that must be absent")
    group.add_argument("--groups", action="append", help="Only these group IDs")
    scope = group.add_mutually_exclusive_group()
    scope.add_argument("--page", action="store_true", help="Only page notes")
    scope.add_argument("--annotation", action="store_true", help="Only highlights")
    group.add_argument("--not", dest="negate", action="store_true", help="Invert the filter")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Gleaner - Local mirror of Hypothesis annotations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sync                             # Pull new and updated annotations
  python main.py tag reading --tags inbox         # Tag everything tagged inbox with reading
  python main.py tag inbox --delete --force       # Remove the inbox tag everywhere
  python main.py make --clear                     # Rebuild the knowledge base
  python main.py view --any python --from today   # Print today's matches
        """
    )

    parser.add_argument("--config", help="Configuration file (default: $GLEANER_CONFIG or gleaner.yaml)")
    parser.add_argument("--group", help="Hypothesis group ID (default: hypothesis.group)")
    parser.add_argument("--version", action="version", version=f"Gleaner {__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Pull annotations from Hypothesis")
    sync.add_argument("--full", action="store_true", help="Ignore the watermark and pull everything")
    sync.add_argument("--reset", action="store_true",
                      help="Forget the group's local annotations and pull them again")

    tag = commands.add_parser("tag", help="Add or remove a tag on matching annotations")
    tag.add_argument("tag", help="Tag to add or remove")
    tag.add_argument("--delete", action="store_true", help="Remove the tag instead of adding it")
    tag.add_argument("--force", action="store_true", help="Don't ask for confirmation")
    add_filter_arguments(tag)

    delete = commands.add_parser("delete", help="Remove matching annotations")
    delete.add_argument("--remote", action="store_true", help="Also delete them on Hypothesis")
    delete.add_argument("--force", action="store_true", help="Don't ask for confirmation")
    add_filter_arguments(delete)

    view = commands.add_parser("view", help="Print matching annotations as markdown")
    view.add_argument("--id", action="append", help="Annotation ID (repeatable)")
    add_filter_arguments(view)

    make = commands.add_parser("make", help="Build the knowledge base")
    make.add_argument("--directory", help="Output directory (default: knowledge_base.directory)")
    make.add_argument("--clear", action="store_true", help="Empty the directory first")
    make.add_argument("--no-index", action="store_true", help="Don't write index files")
    make.add_argument("--force", action="store_true", help="Don't ask before clearing")
    add_filter_arguments(make)

    move = commands.add_parser("move", help="Move matching annotations to another group")
    move.add_argument("target", help="Target group ID")
    move.add_argument("--source", help="Source group ID (default: --group)")
    move.add_argument("--force", action="store_true", help="Don't ask for confirmation")
    add_filter_arguments(move)

    clear = commands.add_parser("clear", help="Delete the local database contents")
    clear.add_argument("--force", action="store_true", help="Don't ask for confirmation")

    config = commands.add_parser("config", help="Show, create or change the configuration")
    config.add_argument("action", choices=["default", "where", "get", "authorize", "group"])
    config.add_argument("value", nargs="?", help="Section to show (get) or group ID to use (group)")
    config.add_argument("--file", help="Where to write the default configuration")
    config.add_argument("--force", action="store_true", help="Overwrite an existing file")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = parse_arguments(argv)
    config = ConfigManager(args.config)
    setup_logging(config)

    try:
        if args.command == "config":
            run_config(config, args)
            return

        context = GleanerContext.from_config(config, args.group)
        with DatabaseManager(config.database_filename) as db:
            COMMANDS[args.command](context, db, TagIndex(db), args)

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        print("\nInterrupted.")

    except GleanerError as e:
        logging.error(f"{args.command} failed: {e}")
        print(f"\n{args.command} failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
