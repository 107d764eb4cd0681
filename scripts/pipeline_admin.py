#!/usr/bin/env python
"""
Pipeline admin commands.

Usage:
  python scripts/pipeline_admin.py init-db        - Create the pipeline tables
  python scripts/pipeline_admin.py sweep          - Run every expiry/retention sweep
  python scripts/pipeline_admin.py stats          - Queue counts and metrics summary
  python scripts/pipeline_admin.py work --limit N - Process up to N queued messages

The work command runs with echo handlers: each service handler logs the
extracted fields and returns them. Real handlers are registered by the
application that embeds the pipeline.
"""

import argparse
import asyncio
import sys
from typing import Any, Dict

from chatledger.config import settings
from chatledger.database import close_db, create_engine_from_settings, create_session_factory, init_db
from chatledger.dependencies import build_pipeline
from chatledger.logging_config import configure_logging, get_logger
from chatledger.schemas.routing import ServiceId
from chatledger.services.intent_router import HandlerRegistry

logger = get_logger("pipeline_admin")


def banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def echo_handlers() -> HandlerRegistry:
    """Handlers that only log what they would do."""
    registry = HandlerRegistry()

    for service_id in ServiceId:
        async def handler(fields: Dict[str, Any], user_id: str, service: ServiceId = service_id) -> Dict[str, Any]:
            logger.info("Echo handler", service=service.value, user_id=user_id, fields=fields)
            return fields

        registry.register(service_id, handler)
    return registry


async def run(args: argparse.Namespace) -> int:
    engine = create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)
    try:
        if args.command == "init-db":
            await init_db(engine)
            print("✅ Tables created")
            return 0

        handlers = echo_handlers() if args.command == "work" else None
        pipeline = build_pipeline(settings, session_factory=session_factory, handlers=handlers)

        if args.command == "sweep":
            report = await pipeline.maintenance.sweep_all()
            for name, count in report.removed.items():
                print(f"  {name:<22} {count:>6} removed")
            for name, error in report.errors.items():
                print(f"❌ {name}: {error}")
            return 0 if report.ok else 1

        if args.command == "stats":
            counts = await pipeline.queue.stats()
            print("Queue:")
            for status, count in counts.items():
                print(f"  {status.value:<12} {count:>6}")
            summary = await pipeline.recorder.summarize(window_days=args.days)
            print(f"Metrics (last {args.days} days):")
            for key, value in summary.value.to_dict().items():
                print(f"  {key:<16} {value}")
            if not summary.ok:
                print(f"⚠️  Metrics unavailable: {summary.error}")
            return 0

        if args.command == "work":
            outcomes = await pipeline.processor.drain(limit=args.limit)
            for outcome in outcomes:
                print(f"  {outcome.message_id}  {outcome.kind.value}")
            print(f"✅ Processed {len(outcomes)} message(s)")
            return 0
    finally:
        await close_db(engine)

    return 1


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="chatledger pipeline administration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the pipeline tables")
    subparsers.add_parser("sweep", help="Run every expiry and retention sweep")
    stats = subparsers.add_parser("stats", help="Show queue counts and the metrics summary")
    stats.add_argument("--days", type=int, default=7, help="Metrics window in days")
    work = subparsers.add_parser("work", help="Process queued messages")
    work.add_argument("--limit", type=int, default=None, help="Maximum messages to process")

    args = parser.parse_args()
    configure_logging()
    banner(f"chatledger - {args.command}")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
