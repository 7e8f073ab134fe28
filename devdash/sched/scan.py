"""Scan-and-dispatch: periodic predicate sweeps that queue one task per matching record."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING

from devdash.core.config import LEASE_TTL, SCAN_CHUNK
from devdash.core.registry import DEFAULT_RETRY, Registry
from devdash.store import lease

from . import tasks

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)

SCAN_TASK = "app.scandata"


def register_scan(
    registry: Registry,
    name: str,
    kind: str,
    where: str,
    period: timedelta,
    handler: Callable[[AppContext, str, str], None],
) -> None:
    """Run ``handler(ctx, kind, key)`` for every ``kind`` record matching ``where``, once per ``period``."""
    registry.add_scan(name, kind, where, period, handler)

    def sweep(ctx: AppContext) -> None:
        dispatch(ctx, name)

    registry.add_cron(f"app.scan.{name}", period, sweep)


def task_name(scan: str, kind: str, key: str) -> str:
    return f"app.scandata.{scan}.{kind}.{key}"


def dispatch(ctx: AppContext, name: str) -> int:
    """Queue the handler for each matching key; returns how many were newly queued."""
    scan = ctx.registry.scans[name]
    keys = ctx.store.keys(scan.kind, scan.where, limit=SCAN_CHUNK)
    queued = 0
    for key in keys:
        if tasks.enqueue(ctx, SCAN_TASK, name, scan.kind, key, name=task_name(name, scan.kind, key)):
            queued += 1
    logger.info("scan %s: %d matching, %d queued", name, len(keys), queued)
    return queued


def run_locked(ctx: AppContext, name: str, kind: str, key: str) -> bool:
    """Run the scan handler for one record under its per-key lease.

    Returns False without running when another caller holds the lease,
    whether that is the queued task or a manual reload.
    """
    scan = ctx.registry.scans[name]
    lease_name = task_name(name, kind, key)
    if not lease.acquire(ctx.store, lease_name, LEASE_TTL):
        logger.info("scan %s: %s[%s] already being handled", name, kind, key)
        return False
    try:
        scan.handler(ctx, kind, key)
    finally:
        lease.release(ctx.store, lease_name)
    return True


def run_item(ctx: AppContext, name: str, kind: str, key: str) -> None:
    if name not in ctx.registry.scans:
        logger.error("scan %s: not registered, dropping %s[%s]", name, kind, key)
        return
    run_locked(ctx, name, kind, key)


def register(registry: Registry) -> None:
    registry.add_task(SCAN_TASK, run_item, DEFAULT_RETRY)
