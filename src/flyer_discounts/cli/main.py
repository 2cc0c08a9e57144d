from __future__ import annotations

import argparse
import dataclasses
import json
import os
import sys
from typing import Optional, Sequence

from ..catalog.db import FlyerDatabase
from ..catalog.discounts import DiscountTransactionManager
from ..catalog.events import FLYER_EXTRACT_IMAGES, FLYER_PRODUCT_MATCH, EventQueue, EventWorker
from ..catalog.repair import repair_all_completed, repair_extracted_images
from ..catalog.storage import ImageStorage
from ..config import Settings, load_settings
from ..errors import FlyerPipelineError
from ..logging import get_logger
from ..orchestrator.flow import FlyerPipeline, upload_flyer

LOG = get_logger("cli-main")


def _settings(ns: argparse.Namespace) -> Settings:
    settings = load_settings(os.getcwd())
    if getattr(ns, "root_dir", None):
        settings = dataclasses.replace(settings, root_dir=os.path.abspath(ns.root_dir))
    return settings


def _print(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _handle_init(ns: argparse.Namespace) -> int:
    settings = _settings(ns)
    db = FlyerDatabase(settings.root_dir)
    if ns.rule_prompt:
        rule_id = db.add_auto_approval_rule(ns.rule_name, ns.rule_prompt)
        LOG.info(f"Activated auto-approval rule #{rule_id} ({ns.rule_name})")
    LOG.info(f"Flyer DB ready at: {db.db_path}")
    print(db.db_path)
    return 0


def _handle_upload(ns: argparse.Namespace) -> int:
    settings = _settings(ns)
    db = FlyerDatabase(settings.root_dir)
    storage = ImageStorage(settings.root_dir, public_base_url=settings.public_base_url)
    flyer = upload_flyer(db, storage, EventQueue(db), ns.source, uploaded_by=ns.uploaded_by)
    _print(flyer.as_dict())
    return 0


def _handle_worker(ns: argparse.Namespace) -> int:
    settings = _settings(ns)
    pipeline = FlyerPipeline.from_settings(settings)
    worker = EventWorker(pipeline.queue, pipeline.handlers(), max_attempts=ns.max_attempts)
    if ns.once:
        processed = 0
        while worker.run_once():
            processed += 1
        LOG.info(f"Queue drained after {processed} event(s): {pipeline.queue.counts()}")
        return 0
    LOG.info("Worker started. Press Ctrl+C to stop.")
    try:
        worker.run_forever(poll_interval=ns.poll_interval)
    except KeyboardInterrupt:
        LOG.info("Worker interrupted by user. Exiting.")
    return 0


def _handle_extract(ns: argparse.Namespace) -> int:
    settings = _settings(ns)
    pipeline = FlyerPipeline.from_settings(settings)
    report = pipeline.handle_extract_images({"flyerImageId": ns.flyer_id})
    _print(report.as_dict())
    return 0 if not report.failed else 1


def _handle_match(ns: argparse.Namespace) -> int:
    settings = _settings(ns)
    pipeline = FlyerPipeline.from_settings(settings)
    item = pipeline.handle_product_match({"parsedItemId": ns.item_id, "rematch": ns.rematch})
    _print(item.as_dict() if item else None)
    return 0


def _handle_apply(ns: argparse.Namespace) -> int:
    settings = _settings(ns)
    manager = DiscountTransactionManager(FlyerDatabase(settings.root_dir))
    result = manager.apply_discount(ns.item_id, ns.product_id, ns.percentage, applied_by=ns.applied_by)
    _print(result.as_dict())
    return 0


def _handle_repair(ns: argparse.Namespace) -> int:
    settings = _settings(ns)
    db = FlyerDatabase(settings.root_dir)
    if ns.item_id:
        outcome = repair_extracted_images(db, ns.item_id)
        LOG.info(outcome.message)
        _print(outcome.as_dict())
        return 0 if outcome.success else 1
    summary = repair_all_completed(db)
    LOG.info(summary.message)
    _print(summary.as_dict())
    return 0 if not summary.errors else 1


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..api import create_app
    import uvicorn

    settings = _settings(ns)
    app = create_app(root_dir=settings.root_dir, allow_origins=ns.allow_origins)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flyer-pipeline",
        description="Parse retail flyers, extract product photos, match the catalog and apply discounts.",
    )
    parser.add_argument("--root-dir", help="Project root holding var/ (defaults to FLYER_ROOT_DIR or the repo root)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Create/ensure the flyer DB schema exists")
    init.add_argument("--rule-name", default="default", help="Name for the auto-approval rule")
    init.add_argument("--rule-prompt", help="Activate an auto-approval rule with these instructions")
    init.set_defaults(handler=_handle_init)

    upload = subparsers.add_parser("upload", help="Store a flyer image and queue it for parsing")
    upload.add_argument("--source", required=True, help="Path to the flyer image (JPG/PNG/WEBP)")
    upload.add_argument("--uploaded-by")
    upload.set_defaults(handler=_handle_upload)

    worker = subparsers.add_parser("worker", help="Process queued pipeline events")
    worker.add_argument("--once", action="store_true", help="Drain the queue and exit")
    worker.add_argument("--max-attempts", type=int, default=3)
    worker.add_argument("--poll-interval", type=float, default=2.0)
    worker.set_defaults(handler=_handle_worker)

    extract = subparsers.add_parser("extract", help=f"Run the {FLYER_EXTRACT_IMAGES} stage for one flyer")
    extract.add_argument("--flyer-id", required=True)
    extract.set_defaults(handler=_handle_extract)

    match = subparsers.add_parser("match", help=f"Run the {FLYER_PRODUCT_MATCH} stage for one parsed item")
    match.add_argument("--item-id", required=True)
    match.add_argument("--rematch", action="store_true", help="Score again even if matching completed")
    match.set_defaults(handler=_handle_match)

    apply_cmd = subparsers.add_parser("apply-discount", help="Assign a parsed item's discount to a catalog product")
    apply_cmd.add_argument("--item-id", required=True)
    apply_cmd.add_argument("--product-id", required=True)
    apply_cmd.add_argument("--percentage", type=float, required=True)
    apply_cmd.add_argument("--applied-by", default="admin")
    apply_cmd.set_defaults(handler=_handle_apply)

    repair = subparsers.add_parser("repair", help="Normalize legacy extractedImages records")
    repair.add_argument("--item-id", help="Repair one item (default: every completed item)")
    repair.set_defaults(handler=_handle_repair)

    serve = subparsers.add_parser("serve", help="Run the discount/repair HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"CLI invoked with arguments: {provided}")

    args = build_parser().parse_args(provided)
    try:
        code = args.handler(args)
    except FlyerPipelineError as exc:
        LOG.error(f"{args.command} failed: {type(exc).__name__}: {exc}")
        code = 1
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
