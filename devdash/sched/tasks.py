"""Named task queue backed by the ``tasks`` table.

A task is a registered function plus JSON-encoded positional arguments.
Named tasks hold the lease ``Task.<name>`` from enqueue until they succeed
(or run out of retries), so the same name cannot be queued twice. While a
task runs it holds ``TaskExec.<name>``.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pandas as pd

from devdash.core.config import LEASE_TTL, TASK_NAME_RETENTION
from devdash.core.errors import RegistrationError, RetryTask
from devdash.store import lease

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)


def _stamp(ts: datetime) -> str:
    return ts.astimezone(UTC).isoformat(timespec="microseconds")


def enqueue(
    ctx: AppContext,
    func: str,
    *args: Any,
    name: str | None = None,
    retention: timedelta = TASK_NAME_RETENTION,
    delay: timedelta = timedelta(0),
) -> bool:
    """Queue ``func(ctx, *args)``.

    Returns False without queuing when a task with the same ``name`` is
    still pending. Unknown functions and wrong argument counts raise
    immediately so mistakes surface at the call site.
    """
    tf = ctx.registry.tasks.get(func)
    if tf is None:
        raise RegistrationError(f"unknown task function {func!r}")
    if tf.nargs >= 0 and len(args) != tf.nargs:
        raise TypeError(f"task {func}: want {tf.nargs} args, got {len(args)}")
    payload = json.dumps(list(args))
    store = ctx.store
    with store.transaction() as st:
        if name:
            if not lease.acquire(st, f"Task.{name}", retention):
                logger.debug("task %s already queued", name)
                return False
        else:
            name = f"{func}.{uuid.uuid4().hex}"
        now = ctx.clock()
        cur = st.db.execute(
            "INSERT INTO tasks (name, func, args, attempts, eta, created) VALUES (?, ?, ?, 0, ?, ?) "
            "ON CONFLICT(name) DO NOTHING",
            (name, func, payload, _stamp(now + delay), _stamp(now)),
        )
        queued = cur.rowcount > 0
    if queued:
        logger.debug("queued task %s", name)
    return queued


def pending(ctx: AppContext, limit: int = 100) -> list[dict[str, Any]]:
    """Tasks whose eta has passed, oldest first."""
    return ctx.store.db.query(
        "SELECT * FROM tasks WHERE eta <= ? ORDER BY eta, name LIMIT ?",
        (_stamp(ctx.clock()), limit),
    )


def _finish(ctx: AppContext, name: str) -> None:
    with ctx.store.transaction() as st:
        st.db.execute("DELETE FROM tasks WHERE name = ?", (name,))
        lease.release(st, f"Task.{name}")


def _retry(ctx: AppContext, row: dict[str, Any], error: str) -> str:
    tf = ctx.registry.tasks[row["func"]]
    attempts = row["attempts"] + 1
    if attempts > tf.retry.limit:
        logger.error("task %s: giving up after %d attempts: %s", row["name"], attempts, error)
        _finish(ctx, row["name"])
        return "dropped"
    eta = ctx.clock() + tf.retry.backoff(attempts)
    ctx.store.db.execute(
        "UPDATE tasks SET attempts = ?, eta = ?, last_error = ? WHERE name = ?",
        (attempts, _stamp(eta), error[:500], row["name"]),
    )
    return "retry"


def run_task(ctx: AppContext, row: dict[str, Any]) -> str:
    """Execute one queued task row; returns ``done``, ``retry``, ``dropped`` or ``busy``."""
    name = row["name"]
    tf = ctx.registry.tasks.get(row["func"])
    if tf is None:
        logger.error("task %s: unknown function %s, dropping", name, row["func"])
        _finish(ctx, name)
        return "dropped"
    exec_name = f"TaskExec.{name}"
    if not lease.acquire(ctx.store, exec_name, LEASE_TTL):
        logger.info("task %s already running", name)
        return "busy"
    try:
        tf.func(ctx, *json.loads(row["args"]))
    except RetryTask as exc:
        logger.info("task %s: retry requested: %s", name, exc)
        return _retry(ctx, row, str(exc) or "retry")
    except Exception as exc:
        logger.exception("task %s failed", name)
        return _retry(ctx, row, f"{type(exc).__name__}: {exc}")
    else:
        _finish(ctx, name)
        return "done"
    finally:
        lease.release(ctx.store, exec_name)


def next_eta(ctx: AppContext) -> datetime | None:
    row = ctx.store.db.query_one("SELECT MIN(eta) AS eta FROM tasks")
    if not row or row["eta"] is None:
        return None
    return datetime.fromisoformat(row["eta"])


def drain(
    ctx: AppContext,
    max_tasks: int = 10000,
    wait: timedelta = timedelta(0),
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, int]:
    """Run due tasks until none are due (or ``max_tasks`` have run).

    When nothing is due but a task becomes due within ``wait``, sleeps
    until then and keeps going, so short retries run in the same drain.
    """
    outcomes: dict[str, int] = {}
    ran = 0
    while ran < max_tasks:
        rows = pending(ctx, limit=min(100, max_tasks - ran))
        if not rows:
            eta = next_eta(ctx)
            if eta is None:
                break
            delay = eta - ctx.clock()
            if delay > wait:
                break
            sleep(max(delay.total_seconds(), 0))
            continue
        progressed = False
        for row in rows:
            result = run_task(ctx, row)
            outcomes[result] = outcomes.get(result, 0) + 1
            ran += 1
            progressed = progressed or result != "busy"
        if not progressed:
            break
    return outcomes


def summary_frame(ctx: AppContext) -> pd.DataFrame:
    """Queue summary per task function."""
    rows = ctx.store.db.query("SELECT func, attempts, eta FROM tasks")
    if not rows:
        return pd.DataFrame(columns=["func", "queued", "retrying", "next_eta"])
    df = pd.DataFrame(rows)
    df["retrying"] = df["attempts"] > 0
    out = (
        df.groupby("func")
        .agg(queued=("func", "size"), retrying=("retrying", "sum"), next_eta=("eta", "min"))
        .reset_index()
    )
    return out.sort_values("func").reset_index(drop=True)


def status(ctx: AppContext) -> str:
    df = summary_frame(ctx)
    if df.empty:
        return "no tasks queued\n"
    return df.to_string(index=False) + "\n"


def register(registry) -> None:
    registry.add_status("task queue", status)
