from __future__ import annotations

import argparse
import asyncio
import sys

from tierguard.core.logging import configure_logging
from tierguard.services.engine import build_engine
from tierguard.services.reconciliation import reconcile_pending_events, replay_event


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-drive recorded webhook events that were never applied")
    parser.add_argument("--event-id", default=None, help="Replay a single stored event")
    parser.add_argument("--limit", type=int, default=None, help="Maximum events per sweep")
    parser.add_argument("--min-age-s", type=int, default=None, help="Skip events received more recently")
    return parser


async def _run(args: argparse.Namespace) -> int:
    engine = await build_engine()
    await engine.start()
    try:
        if args.event_id:
            outcome = await replay_event(engine.state_machine, engine.session_factory, args.event_id)
            print(
                f"event_id={outcome.event_id} status={outcome.status} "
                f"account_id={outcome.account_id} replayed={outcome.replayed}"
            )
            return 1 if outcome.status == "not_found" else 0
        report = await reconcile_pending_events(
            engine.state_machine,
            engine.session_factory,
            limit=args.limit,
            min_age_s=args.min_age_s,
        )
        print(" ".join(f"{key}={value}" for key, value in report.as_dict().items()))
        return 0
    finally:
        # Let queued notifications finish before the process exits.
        await engine.shutdown()


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
