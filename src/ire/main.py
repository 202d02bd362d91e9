from __future__ import annotations

import argparse
import logging
import mimetypes
import sys
from pathlib import Path

from ire.application.container import build_container
from ire.config import get_app_paths
from ire.domain.errors import AppError
from ire.logging_config import setup_logging

log = logging.getLogger("ire.main")


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ire", description="Inventory reconciliation engine")
    p.add_argument("--db", help="sqlite database path (defaults to the per-user data dir)")
    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="extract an invoice image and register it as received")
    scan.add_argument("--branch", required=True)
    scan.add_argument("--file", required=True)
    scan.add_argument("--mime", help="override the guessed mime type")

    imp = sub.add_parser("import-closing", help="load a closing count sheet as a draft")
    imp.add_argument("--branch", required=True)
    imp.add_argument("--date", required=True, help="YYYY-MM-DD")
    imp.add_argument("--file", required=True)

    cat = sub.add_parser("import-ingredients", help="bulk-load the branch ingredient catalog")
    cat.add_argument("--branch", required=True)
    cat.add_argument("--file", required=True)

    done = sub.add_parser("complete", help="complete a draft closing")
    done.add_argument("--closing-id", type=int, required=True)
    done.add_argument("--by")

    usage = sub.add_parser("usage", help="show this month's extraction API usage")
    usage.add_argument("--api", default="gemini")
    return p


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.INFO)

    container = build_container(args.db or paths.db_path)
    try:
        if args.command == "scan":
            path = Path(args.file)
            mime = args.mime or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            invoice_id = container.invoices.scan_invoice(args.branch, path.read_bytes(), mime, image_url=str(path))
            print(f"invoice {invoice_id} received")
        elif args.command == "import-closing":
            closing_id, unmatched = container.excel.import_closing_sheet(args.file, args.branch, args.date)
            print(f"closing {closing_id} saved as draft")
            for name in unmatched:
                print(f"  unmatched: {name}")
        elif args.command == "import-ingredients":
            inserted, skipped = container.excel.import_ingredients(args.file, args.branch)
            print(f"{inserted} ingredients added, {skipped} skipped")
        elif args.command == "complete":
            closing = container.closings.complete(args.closing_id, args.by)
            print(f"closing {closing.id} completed ({len(closing.items)} items)")
        elif args.command == "usage":
            print(f"{args.api}: {container.quota.get_usage(args.api)}")
    except AppError as e:
        log.error("command_failed command=%s error=%s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
