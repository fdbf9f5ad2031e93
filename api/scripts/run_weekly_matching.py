import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from friendmatch import config
from friendmatch.errors import FatalEnumerationError, PersistenceError
from friendmatch.main import build_orchestrator


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate weekly friend matches for every eligible user")
    parser.add_argument("--cycle", default=None, help="Cycle to generate, e.g. 2026-W42 (default: current week)")
    parser.add_argument("--force", action="store_true", help="Delete the cycle's matches before regenerating")
    parser.add_argument("--batch-size", type=int, default=config.MATCH_BATCH_SIZE)
    parser.add_argument("--batch-delay-ms", type=int, default=config.MATCH_BATCH_DELAY_MS)
    parser.add_argument("--timeout", type=float, default=config.MATCH_RUN_TIMEOUT_SECONDS, help="Stop scheduling new batches after N seconds")
    args = parser.parse_args()

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    orchestrator = build_orchestrator()
    orchestrator.batch_size = args.batch_size
    orchestrator.batch_delay_ms = args.batch_delay_ms
    orchestrator.run_timeout_seconds = args.timeout or None

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())

    try:
        report = orchestrator.run(args.cycle, force=args.force, stop_event=stop_event)
    except ValueError as exc:
        parser.error(str(exc))
    except (FatalEnumerationError, PersistenceError) as exc:
        print(json.dumps({"success": False, "kind": exc.kind, "error": exc.message}, indent=2))
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
