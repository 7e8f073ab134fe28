"""Versioned record store over the ``records`` table.

Every ``get`` and ``put`` runs the kind's pending migrations and then its
derive function, so callers always see records at the current version
with freshly computed derived fields. ``get`` does not write the upgraded
record back; ``put`` stores it normalised.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from devdash.core import models
from devdash.core.config import SCAN_CHUNK, Settings
from devdash.core.errors import MigrationError, NotFound
from devdash.core.registry import Kind, Registry

from .db import Database

logger = logging.getLogger(__name__)

META = "Meta"


def field_expr(name: str) -> str:
    """SQL expression for a top-level JSON field of a record."""
    return f"json_extract(data, '$.{name}')"


class Store:
    def __init__(
        self,
        db: Database,
        registry: Registry,
        clock: Callable[[], datetime],
        settings: Settings | None = None,
    ):
        self.db = db
        self.registry = registry
        self.clock = clock
        self.settings = settings or Settings()

    @contextmanager
    def transaction(self) -> Iterator[Store]:
        with self.db.transaction():
            yield self

    # ------------------ records ------------------

    def update(self, kind: Kind, record: Any) -> Any:
        """Bring ``record`` to the current version of ``kind`` and re-derive it.

        A ``dv`` of 0 marks a record built in memory, already in the current shape.
        """
        for version, migrate in kind.pending(record.dv) if record.dv else ():
            try:
                upgraded = migrate(record)
            except MigrationError:
                raise
            except Exception as exc:
                raise MigrationError(f"{kind.name}: upgrade to v{version}: {exc}") from exc
            if upgraded is not None:
                record = upgraded
            record.dv = version
        if kind.derive is not None:
            kind.derive(record, self.clock(), self.settings)
        record.dv = kind.version
        return record

    def get(self, kind: str, key: str) -> Any:
        if not key:
            raise ValueError(f"read {kind}: missing key")
        info = self.registry.kind(kind)
        row = self.db.query_one("SELECT data FROM records WHERE kind = ? AND key = ?", (kind, key))
        if row is None:
            raise NotFound(kind, key)
        record = models.loads(info.model, row["data"])
        try:
            return self.update(info, record)
        except MigrationError as exc:
            logger.error("read %s[%s]: %s", kind, key, exc)
            raise

    def find(self, kind: str, key: str) -> Any | None:
        try:
            return self.get(kind, key)
        except NotFound:
            return None

    def put(self, kind: str, key: str, record: Any) -> Any:
        if not key:
            raise ValueError(f"write {kind}: missing key")
        info = self.registry.kind(kind)
        try:
            record = self.update(info, record)
        except MigrationError as exc:
            logger.error("write %s[%s]: %s", kind, key, exc)
            raise
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO records (kind, key, dv, data) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(kind, key) DO UPDATE SET dv = excluded.dv, data = excluded.data",
                (kind, key, record.dv, models.dumps(record)),
            )
        return record

    def delete(self, kind: str, key: str) -> None:
        if not key:
            raise ValueError(f"delete {kind}: missing key")
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM records WHERE kind = ? AND key = ?", (kind, key))

    def keys(
        self,
        kind: str,
        where: str = "1",
        params: tuple[Any, ...] = (),
        limit: int = SCAN_CHUNK,
    ) -> list[str]:
        rows = self.db.query(
            f"SELECT key FROM records WHERE kind = ? AND ({where}) ORDER BY key LIMIT ?",
            (kind, *params, limit),
        )
        return [r["key"] for r in rows]

    def query(
        self,
        kind: str,
        where: str = "1",
        params: tuple[Any, ...] = (),
        limit: int = SCAN_CHUNK,
    ) -> list[Any]:
        """Matching records, decoded and brought up to date (not written back).

        A record that fails to migrate raises ``MigrationError``, as ``get`` does.
        """
        info = self.registry.kind(kind)
        rows = self.db.query(
            f"SELECT key, data FROM records WHERE kind = ? AND ({where}) ORDER BY key LIMIT ?",
            (kind, *params, limit),
        )
        out = []
        for row in rows:
            try:
                out.append(self.update(info, models.loads(info.model, row["data"])))
            except MigrationError as exc:
                logger.error("read %s[%s]: %s", kind, row["key"], exc)
                raise
        return out

    def count(self, kind: str, where: str = "1", params: tuple[Any, ...] = ()) -> int:
        row = self.db.query_one(
            f"SELECT COUNT(*) AS n FROM records WHERE kind = ? AND ({where})",
            (kind, *params),
        )
        return int(row["n"]) if row else 0

    def stale_keys(self, kind: str, limit: int) -> list[str]:
        """Keys of ``kind`` stored below the current version."""
        info = self.registry.kind(kind)
        rows = self.db.query(
            "SELECT key FROM records WHERE kind = ? AND dv < ? ORDER BY key LIMIT ?",
            (kind, info.version, limit),
        )
        return [r["key"] for r in rows]

    # ------------------ meta ------------------

    def read_meta(self, key: str, default: Any = None) -> Any:
        row = self.db.query_one("SELECT data FROM records WHERE kind = ? AND key = ?", (META, key))
        if row is None:
            return default
        return json.loads(row["data"])

    def write_meta(self, key: str, value: Any) -> None:
        data = json.dumps(value, default=models._json_default)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO records (kind, key, dv, data) VALUES (?, ?, 0, ?) "
                "ON CONFLICT(kind, key) DO UPDATE SET data = excluded.data",
                (META, key, data),
            )

    def delete_meta(self, key: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM records WHERE kind = ? AND key = ?", (META, key))

    def meta_items(self, prefix: str) -> list[tuple[str, Any]]:
        rows = self.db.query(
            "SELECT key, data FROM records WHERE kind = ? AND substr(key, 1, ?) = ? ORDER BY key",
            (META, len(prefix), prefix),
        )
        return [(r["key"], json.loads(r["data"])) for r in rows]

    def bump_counter(self, key: str) -> int:
        with self.transaction():
            count = int(self.read_meta(key, 0)) + 1
            self.write_meta(key, count)
        return count
