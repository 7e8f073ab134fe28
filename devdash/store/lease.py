"""Advisory, time-bounded leases stored as ``Meta`` records named ``Lock:<name>``."""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta

from devdash.core.models import parse_iso

from .records import Store

logger = logging.getLogger(__name__)


def _meta_key(name: str) -> str:
    return f"Lock:{name}"


def acquire(store: Store, name: str, duration: timedelta) -> bool:
    """Take the lease ``name`` for ``duration`` unless someone holds an unexpired one.

    Returns False on contention and also when the store transaction fails;
    callers skip their work either way.
    """
    key = _meta_key(name)
    try:
        with store.transaction():
            now = store.clock()
            held = store.read_meta(key)
            if held and parse_iso(held) > now:
                logger.debug("lease %s held until %s", name, held)
                return False
            store.write_meta(key, (now + duration).isoformat())
            return True
    except sqlite3.Error as exc:
        logger.warning("lease %s: %s", name, exc)
        return False


def release(store: Store, name: str) -> None:
    store.delete_meta(_meta_key(name))


def expiry(store: Store, name: str) -> str | None:
    return store.read_meta(_meta_key(name))
