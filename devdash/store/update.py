"""Background sweep that rewrites records stored below their kind's current version."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from devdash.core.config import LEASE_TTL, SCAN_CHUNK, UPDATE_CHUNK
from devdash.core.errors import MigrationError, NotFound
from devdash.sched import tasks

from . import lease

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)

UPDATE_TASK = "app.update.kind"


def background_update(ctx: AppContext) -> None:
    kinds = sorted(ctx.registry.kinds)
    logger.info("background update of %s", ", ".join(kinds))
    for kind in kinds:
        tasks.enqueue(ctx, UPDATE_TASK, kind)


def update_kind(ctx: AppContext, kind: str) -> int:
    """Rewrite up to one chunk of stale ``kind`` records.

    Re-queues itself while a full chunk came back, unless every record in it
    failed to migrate.
    """
    lease_name = f"app.update.{kind}"
    if not lease.acquire(ctx.store, lease_name, LEASE_TTL):
        logger.warning("update of %s already in progress", kind)
        return 0
    try:
        keys = ctx.store.stale_keys(kind, UPDATE_CHUNK)
        if not keys:
            logger.info("%s: nothing to update", kind)
            return 0
        errors = 0
        for key in keys:
            try:
                with ctx.store.transaction() as st:
                    st.put(kind, key, st.get(kind, key))
            except (MigrationError, NotFound) as exc:
                errors += 1
                logger.error("update %s[%s]: %s", kind, key, exc)
        logger.info("%s: updated %d records, %d errors", kind, len(keys) - errors, errors)
        if len(keys) == UPDATE_CHUNK and errors < len(keys):
            tasks.enqueue(ctx, UPDATE_TASK, kind, delay=timedelta(seconds=1))
        return len(keys) - errors
    finally:
        lease.release(ctx.store, lease_name)


def status(ctx: AppContext) -> str:
    lines = []
    for name in sorted(ctx.registry.kinds):
        kind = ctx.registry.kinds[name]
        n = len(ctx.store.stale_keys(name, SCAN_CHUNK))
        if n >= SCAN_CHUNK:
            lines.append(f"{name}: >={n} remaining to update to DV = {kind.version}")
        elif n:
            lines.append(f"{name}: {n} remaining to update to DV = {kind.version}")
        else:
            lines.append(f"{name}: all updated to DV = {kind.version}")
    return "\n".join(lines) + "\n"


def register(registry) -> None:
    registry.add_cron("app.update", timedelta(minutes=5), background_update)
    registry.add_task(UPDATE_TASK, update_kind)
    registry.add_status("data updater", status)
