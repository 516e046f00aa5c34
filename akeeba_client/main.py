"""
Command line entry point for the backup client.
Parse the site and the command, run it against the site and print what happens.
"""
import argparse, json, logging, os, sys
from typing import Any, Dict, List, Optional

import structlog

from akeeba_client.events import EVENTS
from akeeba_client.net import BACKUP_TAG, BackupClient, DEFAULT_TIMEOUT, TransportError, DecodeError
from akeeba_client.state import COMPLETED


def configure_logging(level: str) -> None:
    ''' Console logging for the command line; the library itself never configures structlog '''
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="akeeba-client", description="Drive Akeeba Backup through its JSON API")
    ap.add_argument("--url", default=os.environ.get("AKEEBA_URL"), help="Site url (env AKEEBA_URL)")
    ap.add_argument("--secret", default=os.environ.get("AKEEBA_SECRET"), help="Secret key (env AKEEBA_SECRET)")
    ap.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="HTTP timeout in seconds")
    ap.add_argument("--strict", action="store_true", help="Fail on undecodable responses")
    ap.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("version", help="API and component version")
    sub.add_parser("profiles", help="Backup profiles")

    p = sub.add_parser("list", help="Backup records, latest first")
    p.add_argument("--from", dest="from_", type=int, default=0)
    p.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("info", help="Details of a backup record")
    p.add_argument("id", type=int)

    p = sub.add_parser("backup", help="Back up the whole site")
    p.add_argument("--profile", type=int)
    p.add_argument("--description")
    p.add_argument("--comment")
    p.add_argument("--tag", default=BACKUP_TAG, help="Tag the backup is stepped under")

    p = sub.add_parser("srp", help="System Restore Point of an extension")
    p.add_argument("name")
    p.add_argument("type")
    p.add_argument("--group")

    p = sub.add_parser("download", help="Download a backup archive")
    p.add_argument("id", type=int)
    p.add_argument("file")
    p.add_argument("--direct", action="store_true", help="Unencrypted download, one part per call")

    p = sub.add_parser("log", help="Download the log of a backup tag")
    p.add_argument("tag")
    p.add_argument("file")

    p = sub.add_parser("delete", help="Delete a backup record")
    p.add_argument("id", type=int)
    p.add_argument("--files-only", action="store_true", help="Keep the record, delete the files")

    p = sub.add_parser("update-info", help="Update status of the component")
    p.add_argument("--force", action="store_true")

    sub.add_parser("update", help="Download, extract and install the component update")
    return ap

def print_event(name: str, payload: Dict[str, Any]) -> None:
    print(f"[{name}] {json.dumps(payload, default=str)}")

def run(client: BackupClient, args: argparse.Namespace) -> int:
    ''' Run one command; returns the process exit code '''
    queries = {
        "version": lambda: client.get_version(),
        "profiles": lambda: client.get_profiles(),
        "list": lambda: client.list_backups(args.from_, args.limit),
        "info": lambda: client.get_backup_info(args.id),
        "delete": lambda: (client.delete_files(args.id) if args.files_only else client.delete(args.id)),
        "update-info": lambda: client.update_get_information(args.force),
    }
    if args.command in queries:
        try:
            print(json.dumps(queries[args.command](), indent=2))
        except (TransportError, DecodeError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    for name in EVENTS:
        client.on(name, lambda payload, name=name: print_event(name, payload))

    if args.command == "backup":
        state = client.backup(args.profile, args.description, args.comment, tag=args.tag)
    elif args.command == "srp":
        state = client.srp(args.name, args.type, args.group)
    elif args.command == "download":
        fetch = client.download_direct if args.direct else client.download
        state = fetch(args.id, args.file)
    elif args.command == "update":
        state = client.update()
    else:   # log
        return 0 if client.get_log(args.tag, args.file) else 1
    return 0 if state.status == COMPLETED else 1

def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    if not args.url or not args.secret:
        ap.error("--url and --secret are required (or set AKEEBA_URL / AKEEBA_SECRET)")
    configure_logging(args.log_level)

    with BackupClient(args.url, args.secret, strict=args.strict, timeout=args.timeout) as client:
        return run(client, args)


if __name__ == "__main__":
    sys.exit(main())
