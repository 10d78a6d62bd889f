"""
Reposhelf CLI

Operator commands over a project store. Every command prints
structured JSON when --json is passed; human-readable output is the
default.

The store root comes from --root, or REPOSHELF_ROOT when omitted.

Usage:
    reposhelf create ID [--template NAME]
    reposhelf cat ID PATH [--at COMMIT]
    reposhelf put ID PATH [FILE] [--message MSG] [--author NAME]
    reposhelf rm ID PATH [--message MSG] [--author NAME]
    reposhelf ls ID
    reposhelf log ID [PATH] [--limit N]
    reposhelf show ID COMMIT
    reposhelf clone SOURCE NEW [--with-history]
    reposhelf delete ID
    reposhelf status ID
    reposhelf verify ID
    reposhelf recover [ID]
    reposhelf projects
    reposhelf templates
"""

import argparse
import base64
import json
import logging
import sys
from datetime import datetime

import reposhelf as _reposhelf_pkg

from .errors import StoreError
from .store import ProjectStore


def open_store(args) -> ProjectStore:
    return ProjectStore.open(args.root)


def format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


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


def _display_hash(h: str | None, verbosity: int) -> str:
    """Return full or short hash based on verbosity."""
    if not h:
        return "none"
    if verbosity >= 2:
        return h
    return h[:12]


def _print_commits(commits, v: int):
    for c in commits:
        if v == 0:
            print(c.hash)
            continue
        print(f"{_display_hash(c.hash, v)}  {format_time(c.timestamp)}  {c.author}")
        print(f"    {c.message}")
        if v >= 2:
            for path, change in sorted(c.changes.items()):
                print(f"      {change:<9} {path}")


# ── Commands ──────────────────────────────────────────────────


def cmd_create(args):
    v = get_verbosity(args)
    store = open_store(args)
    tree = store.create_project(args.project_id, template=args.template, author=args.author)
    head = store.head(args.project_id)
    if args.json:
        print_json({"project_id": args.project_id, "path": str(tree), "head": head.hash})
    elif v == 0:
        print(head.hash)
    else:
        print(f"✓ Created project {args.project_id} at {tree}")
        print(f"  Initial commit: {_display_hash(head.hash, v)}")


def cmd_cat(args):
    store = open_store(args)
    if args.at:
        content = store.file_at(args.project_id, args.at, args.file_path)
    else:
        content = store.get_file(args.project_id, args.file_path)

    if args.json:
        print_json(
            {
                "project_id": args.project_id,
                "path": args.file_path,
                "commit": args.at,
                "size": len(content),
                "content_base64": base64.b64encode(content).decode("ascii"),
            }
        )
    else:
        sys.stdout.buffer.write(content)
        sys.stdout.buffer.flush()


def cmd_put(args):
    v = get_verbosity(args)
    if args.source and args.source != "-":
        with open(args.source, "rb") as f:
            content = f.read()
    else:
        content = sys.stdin.buffer.read()

    store = open_store(args)
    commit_hash = store.put_file(
        args.project_id, args.file_path, content, message=args.message, author=args.author
    )
    if args.json:
        print_json(
            {
                "project_id": args.project_id,
                "path": args.file_path,
                "commit": commit_hash,
                "size": len(content),
            }
        )
    elif v == 0:
        print(commit_hash)
    else:
        print(f"✓ Wrote {args.file_path} ({len(content):,} bytes)")
        print(f"  Commit: {_display_hash(commit_hash, v)}")


def cmd_rm(args):
    v = get_verbosity(args)
    store = open_store(args)
    commit_hash = store.remove_file(
        args.project_id, args.file_path, message=args.message, author=args.author
    )
    if args.json:
        print_json({"project_id": args.project_id, "path": args.file_path, "commit": commit_hash})
    elif v == 0:
        print(commit_hash)
    else:
        print(f"✓ Deleted {args.file_path}")
        print(f"  Commit: {_display_hash(commit_hash, v)}")


def cmd_ls(args):
    v = get_verbosity(args)
    store = open_store(args)
    entries = store.list_files(args.project_id)
    if args.json:
        print_json([e.to_dict() for e in entries])
        return
    for e in entries:
        if v >= 2:
            print(f"{e.size:>10,}  {format_time(e.modified)}  {e.path}")
        else:
            print(e.path)


def cmd_log(args):
    v = get_verbosity(args)
    store = open_store(args)
    if args.file_path:
        commits = store.file_history(args.project_id, args.file_path, limit=args.limit)
    else:
        commits = store.project_history(args.project_id, limit=args.limit)

    if args.json:
        print_json([c.to_dict() for c in commits])
    elif not commits:
        if v > 0:
            print("No commits.")
    else:
        _print_commits(commits, v)


def cmd_show(args):
    """Show one commit and the files it touched."""
    v = get_verbosity(args)
    store = open_store(args)
    commit = store.get_commit(args.project_id, args.commit)

    if args.json:
        print_json(commit.to_dict())
        return
    print(f"Commit:  {commit.hash}")
    print(f"Parent:  {_display_hash(commit.parent, v)}")
    print(f"Author:  {commit.author}")
    print(f"Date:    {format_time(commit.timestamp)}")
    print()
    print(f"    {commit.message}")
    if commit.changes:
        print()
        for path, change in sorted(commit.changes.items()):
            print(f"  {change:<9} {path}")


def cmd_clone(args):
    v = get_verbosity(args)
    store = open_store(args)
    tree = store.clone_project(
        args.source_id, args.new_id, with_history=args.with_history, author=args.author
    )
    if args.json:
        print_json(
            {
                "source": args.source_id,
                "project_id": args.new_id,
                "path": str(tree),
                "with_history": args.with_history,
            }
        )
    elif v > 0:
        print(f"✓ Cloned {args.source_id} -> {args.new_id}")


def cmd_delete(args):
    v = get_verbosity(args)
    store = open_store(args)
    deleted = store.delete_project(args.project_id)
    if args.json:
        print_json({"project_id": args.project_id, "deleted": deleted})
    elif v > 0:
        if deleted:
            print(f"✓ Deleted project {args.project_id}")
        else:
            print(f"Project {args.project_id} did not exist")


def cmd_status(args):
    v = get_verbosity(args)
    store = open_store(args)
    status = store.status(args.project_id)

    if args.json:
        print_json(status)
    elif v == 0:
        print(status["head"] or "none")
    else:
        print(f"Project:  {status['project_id']}")
        print(f"Path:     {status['path']}")
        print(f"Head:     {_display_hash(status['head'], v)}")
        print(f"Commits:  {status['commits']}")
        print(f"Files:    {status['files']} ({status['bytes']:,} bytes)")
        if status["uncommitted"]:
            print("Uncommitted changes:")
            for path, change in sorted(status["uncommitted"].items()):
                print(f"  {change:<9} {path}")
        if status["pending"]:
            pending = status["pending"]
            print(
                f"⚠ Interrupted {pending.get('operation')} of {pending.get('path')}"
                f" (run 'reposhelf recover {status['project_id']}')"
            )


def cmd_verify(args):
    v = get_verbosity(args)
    store = open_store(args)
    problems = store.verify(args.project_id)

    if args.json:
        print_json({"project_id": args.project_id, "ok": not problems, "problems": problems})
    elif v > 0:
        if not problems:
            print(f"✓ {args.project_id}: history intact")
        else:
            print(f"✗ {args.project_id}: {len(problems)} problem(s)")
            for p in problems:
                print(f"  - {p}")
    if problems:
        sys.exit(1)


def cmd_recover(args):
    v = get_verbosity(args)
    store = open_store(args)
    if args.project_id:
        results = [store.recover(args.project_id, author=args.author)]
    else:
        results = [store.recover(pid, author=args.author) for pid in store.list_projects()]
    purged = store.purge_trash()

    if args.json:
        print_json({"projects": results, "trash_purged": purged})
        return
    if v == 0:
        return
    changed = [r for r in results if r["commit"] or r["pending"]]
    for r in changed:
        print(f"✓ Recovered {r['project_id']}: commit {_display_hash(r['commit'], v)}")
    if not changed:
        print("Nothing to recover.")
    if purged:
        print(f"  Removed {purged} leftover deleted tree(s)")


def cmd_projects(args):
    store = open_store(args)
    ids = store.list_projects()
    if args.json:
        print_json(ids)
        return
    for pid in ids:
        print(pid)


def cmd_templates(args):
    v = get_verbosity(args)
    store = open_store(args)
    templates = store.templates.list()
    if args.json:
        print_json(
            [
                {
                    "name": t.name,
                    "description": t.description,
                    "files": [f.path for f in t.files],
                }
                for t in templates
            ]
        )
        return
    for t in templates:
        if v >= 2:
            print(f"{t.name:<20} {t.description}")
            for f in t.files:
                print(f"    {f.path}")
        elif v == 1 and t.description:
            print(f"{t.name:<20} {t.description}")
        else:
            print(t.name)


# ── Parser ────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reposhelf",
        description="Reposhelf: versioned project store",
    )
    ver = _reposhelf_pkg.__version__
    parser.add_argument("--version", "-V", action="version", version=f"reposhelf {ver}")
    parser.add_argument(
        "--root", "-C", default=None, help="Store root (default: $REPOSHELF_ROOT)"
    )
    parser.add_argument("--json", "-j", action="store_true", help="JSON output")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Quiet output")

    sub = parser.add_subparsers(dest="command")

    # create
    p = sub.add_parser("create", help="Create a project from a template")
    p.add_argument("project_id")
    p.add_argument("--template", "-t", default="default", help="Template name")
    p.add_argument("--author", default=None)
    p.set_defaults(func=cmd_create)

    # cat
    p = sub.add_parser("cat", help="Print a file")
    p.add_argument("project_id")
    p.add_argument("file_path")
    p.add_argument("--at", default=None, help="Read the file as of this commit")
    p.set_defaults(func=cmd_cat)

    # put
    p = sub.add_parser("put", help="Write a file and commit it")
    p.add_argument("project_id")
    p.add_argument("file_path")
    p.add_argument("source", nargs="?", default=None, help="Local file (default: stdin)")
    p.add_argument("--message", "-m", default=None)
    p.add_argument("--author", default=None)
    p.set_defaults(func=cmd_put)

    # rm
    p = sub.add_parser("rm", help="Delete a file and commit the deletion")
    p.add_argument("project_id")
    p.add_argument("file_path")
    p.add_argument("--message", "-m", default=None)
    p.add_argument("--author", default=None)
    p.set_defaults(func=cmd_rm)

    # ls
    p = sub.add_parser("ls", help="List files in a project")
    p.add_argument("project_id")
    p.set_defaults(func=cmd_ls)

    # log
    p = sub.add_parser("log", help="Show project or file history")
    p.add_argument("project_id")
    p.add_argument("file_path", nargs="?", default=None)
    p.add_argument("--limit", "-n", type=int, default=None)
    p.set_defaults(func=cmd_log)

    # show
    p = sub.add_parser("show", help="Show a commit")
    p.add_argument("project_id")
    p.add_argument("commit", help="Commit hash or unique prefix")
    p.set_defaults(func=cmd_show)

    # clone
    p = sub.add_parser("clone", help="Copy a project into a new one")
    p.add_argument("source_id")
    p.add_argument("new_id")
    p.add_argument("--with-history", action="store_true", help="Keep the source's commit log")
    p.add_argument("--author", default=None)
    p.set_defaults(func=cmd_clone)

    # delete
    p = sub.add_parser("delete", help="Delete a project and its history")
    p.add_argument("project_id")
    p.set_defaults(func=cmd_delete)

    # status
    p = sub.add_parser("status", help="Show project status")
    p.add_argument("project_id")
    p.set_defaults(func=cmd_status)

    # verify
    p = sub.add_parser("verify", help="Check a project's history")
    p.add_argument("project_id")
    p.set_defaults(func=cmd_verify)

    # recover
    p = sub.add_parser("recover", help="Commit interrupted changes and purge trash")
    p.add_argument("project_id", nargs="?", default=None)
    p.add_argument("--author", default=None)
    p.set_defaults(func=cmd_recover)

    # projects
    p = sub.add_parser("projects", help="List projects")
    p.set_defaults(func=cmd_projects)

    # templates
    p = sub.add_parser("templates", help="List templates")
    p.set_defaults(func=cmd_templates)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except StoreError as e:
        if args.json:
            print_json({"error": e.to_dict()})
        else:
            print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, OSError) as e:
        if args.json:
            print_json({"error": {"kind": "error", "message": str(e)}})
        else:
            print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
