"""Periodic jobs driven by an external once-a-minute trigger.

``tick`` advances the shared cron clock and queues one task per job whose
period bucket changed since the previous tick. The job itself runs under
the lease ``app.cron.<name>``; raising ``MoreWork`` re-runs it after a
short backoff, any other exception waits for the next period.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from devdash.core.config import CRON_CLOCK_KEY, CRON_NAME_RETENTION, LEASE_TTL
from devdash.core.errors import MoreWork, RetryTask
from devdash.core.models import parse_iso
from devdash.core.registry import RetryOptions
from devdash.store import lease

from . import tasks

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)

CRON_TASK = "app.cron"
CRON_RETRY = RetryOptions(limit=1000, min_backoff=timedelta(seconds=1), max_backoff=timedelta(seconds=10))


def bucket(ts: datetime, period: timedelta) -> int:
    return int(ts.timestamp() // period.total_seconds())


def tick(ctx: AppContext, force: bool = False) -> list[str]:
    """Advance the cron clock and queue the jobs that are due; returns their names."""
    now = ctx.clock()
    with ctx.store.transaction() as st:
        raw = st.read_meta(CRON_CLOCK_KEY)
        old = parse_iso(raw) if raw else None
        if old is not None and old >= now and not force:
            logger.debug("cron clock at %s, nothing to do at %s", raw, now)
            return []
        st.write_meta(CRON_CLOCK_KEY, now.isoformat())

    due = []
    for job in ctx.registry.cron.values():
        b = bucket(now, job.period)
        if not force and old is not None and bucket(old, job.period) == b:
            continue
        name = f"app.cron.{job.name}.{b}"
        if tasks.enqueue(ctx, CRON_TASK, job.name, name=name, retention=CRON_NAME_RETENTION):
            due.append(job.name)
    if due:
        logger.info("cron dispatched %s", ", ".join(due))
    return due


def run_job(ctx: AppContext, name: str) -> None:
    job = ctx.registry.cron.get(name)
    if job is None:
        logger.error("cron: unknown job %s", name)
        return
    lease_name = f"app.cron.{name}"
    if not lease.acquire(ctx.store, lease_name, LEASE_TTL):
        logger.warning("cron %s: already running", name)
        return
    try:
        job.func(ctx)
    except MoreWork as exc:
        logger.info("cron %s: more work, rescheduling", name)
        raise RetryTask(f"{name}: {exc or 'more work'}") from exc
    except Exception:
        logger.exception("cron %s failed", name)
    finally:
        lease.release(ctx.store, lease_name)


def status(ctx: AppContext) -> str:
    lines = [f"clock: {ctx.store.read_meta(CRON_CLOCK_KEY, 'never')}"]
    for job in sorted(ctx.registry.cron.values(), key=lambda j: j.name):
        running = lease.expiry(ctx.store, f"app.cron.{job.name}")
        note = f" (running, lease until {running})" if running else ""
        lines.append(f"{job.name} every {job.period}{note}")
    return "\n".join(lines) + "\n"


def register(registry) -> None:
    registry.add_task(CRON_TASK, run_job, CRON_RETRY)
    registry.add_status("cron", status)
