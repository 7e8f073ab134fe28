"""Background worker and admin command line.

Usage:
  python run_worker.py tick            # advance cron once and drain the queue
  python run_worker.py loop            # tick every minute
  python run_worker.py status
  python run_worker.py refresh 12345
  python run_worker.py set-reviewer 12345 gri --actor rsc@golang.org
  python run_worker.py mute net/http --user rsc@golang.org
  python run_worker.py dashboard --user rsc@golang.org

Jira credentials come from JIRA_SERVER / JIRA_EMAIL / JIRA_API_TOKEN; other
settings from devdash.yaml next to this file.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from devdash.app import open_app, status_text
from devdash.codereview.edit import refresh_cl, set_reviewer
from devdash.dash.assemble import build_dashboard, dashboard_frame, set_muted
from devdash.sched import cron, tasks

logger = logging.getLogger("devdash.worker")

TICK_SECONDS = 60


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)
    tick = sub.add_parser("tick", help="advance the cron clock once and run due tasks")
    tick.add_argument("--force", action="store_true", help="dispatch every cron job")
    sub.add_parser("loop", help="tick once a minute until interrupted")
    sub.add_parser("status", help="print the operational status dump")
    refresh = sub.add_parser("refresh", help="reload one CL")
    refresh.add_argument("cl")
    rev = sub.add_parser("set-reviewer", help="assign a reviewer to a CL")
    rev.add_argument("cl")
    rev.add_argument("who")
    rev.add_argument("--actor", required=True)
    for verb in ("mute", "unmute"):
        m = sub.add_parser(verb, help=f"{verb} a dashboard directory")
        m.add_argument("dir")
        m.add_argument("--user", required=True)
    dash = sub.add_parser("dashboard", help="print the dashboard table")
    dash.add_argument("--user", default="")
    return p


def _tick(ctx, force: bool = False) -> None:
    cron.tick(ctx, force=force)
    outcomes = tasks.drain(ctx, wait=cron.CRON_RETRY.max_backoff)
    if outcomes:
        logger.info("ran tasks: %s", outcomes)


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx = open_app()
    try:
        if args.cmd == "tick":
            _tick(ctx, force=args.force)
        elif args.cmd == "loop":
            while True:
                _tick(ctx)
                time.sleep(TICK_SECONDS)
        elif args.cmd == "status":
            print(status_text(ctx))
        elif args.cmd == "refresh":
            print("OK" if refresh_cl(ctx, args.cl) else "busy: CL is already being reloaded")
        elif args.cmd == "set-reviewer":
            set_reviewer(ctx, args.cl, args.who, args.actor)
            print("OK")
        elif args.cmd in ("mute", "unmute"):
            pref = set_muted(ctx, args.user, args.dir, args.cmd == "mute")
            print("muted:", ", ".join(pref.muted) or "(none)")
        elif args.cmd == "dashboard":
            df = dashboard_frame(build_dashboard(ctx, args.user), ctx.settings.timezone)
            print(df.to_string(index=False) if not df.empty else "nothing pending")
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        ctx.store.db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
