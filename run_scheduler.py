#!/usr/bin/env python3
"""
Run the background scheduler.

Usage:
  python run_scheduler.py                 # start all timers, Ctrl-C to stop
  python run_scheduler.py --once TASK     # run one task now and exit
  python run_scheduler.py --status        # print task status and exit
"""
from __future__ import annotations

import json
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from autopilot.errors import NotFoundError
from autopilot.log import get_logger
from autopilot.service import Autopilot

log = get_logger(__name__)


def _usage() -> int:
    print(__doc__.strip())
    return 2


def main(argv: list[str]) -> int:
    if "-h" in argv or "--help" in argv:
        return _usage()

    app = Autopilot(async_notifications="--once" not in argv)

    if "--status" in argv:
        print(json.dumps(app.scheduler.get_status(), indent=2))
        return 0

    if "--once" in argv:
        i = argv.index("--once")
        if i + 1 >= len(argv):
            return _usage()
        try:
            record = app.scheduler.run_now(argv[i + 1])
        except NotFoundError as exc:
            log.error("%s", exc.message)
            return 2
        finally:
            app.notifier.close()
        print(json.dumps(record, indent=2, default=str))
        return 0 if record["result"] != "error" else 1

    def _shutdown(signum, _frame):
        log.info("Received signal %d, shutting down", signum)
        app.scheduler.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    with app:
        for task in app.scheduler.get_status():
            log.info(
                "  %-20s every %5.0f min  %s",
                task["name"], task["interval_seconds"] / 60, "enabled" if task["enabled"] else "disabled",
            )
        try:
            while not app.scheduler.wait(1.0):
                pass
        except KeyboardInterrupt:
            log.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
