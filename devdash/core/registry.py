"""Process-wide registry of record kinds, cron jobs, task functions, scans and status sections.

Each module exposes ``register(registry)``; ``devdash.app.build_registry``
calls them in order and then freezes the registry. After that the registry
is read-only and safe to share between workers.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .errors import RegistrationError


@dataclass(slots=True, frozen=True)
class RetryOptions:
    limit: int
    min_backoff: timedelta
    max_backoff: timedelta

    def backoff(self, attempt: int) -> timedelta:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.min_backoff * (2 ** max(attempt - 1, 0))
        return min(delay, self.max_backoff)


DEFAULT_RETRY = RetryOptions(limit=10, min_backoff=timedelta(seconds=1), max_backoff=timedelta(hours=1))


@dataclass(slots=True)
class Kind:
    """A persisted record kind.

    ``migrations`` maps a target version to a function that upgrades a
    record from the previous version. ``derive`` recomputes display fields
    from raw fields and runs on every read and write.
    """

    name: str
    model: type
    version: int = 1
    migrations: dict[int, Callable[[Any], Any]] = field(default_factory=dict)
    derive: Callable[..., None] | None = None

    def pending(self, stored: int) -> list[tuple[int, Callable[[Any], Any]]]:
        return sorted((v, fn) for v, fn in self.migrations.items() if stored < v <= self.version)


@dataclass(slots=True)
class CronJob:
    name: str
    period: timedelta
    func: Callable[[Any], None]


@dataclass(slots=True)
class TaskFunc:
    name: str
    func: Callable[..., None]
    retry: RetryOptions = DEFAULT_RETRY
    nargs: int = 0


@dataclass(slots=True)
class ScanJob:
    """Periodic sweep: ``where`` is a SQL predicate over the record's JSON ``data``."""

    name: str
    kind: str
    where: str
    period: timedelta
    handler: Callable[[Any, str, str], None]


@dataclass(slots=True)
class StatusSection:
    heading: str
    func: Callable[[Any], str]


def _positional_args(func: Callable[..., Any]) -> int:
    params = inspect.signature(func).parameters.values()
    if any(p.kind is p.VAR_POSITIONAL for p in params):
        return -1
    return sum(1 for p in params if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)) - 1


class Registry:
    def __init__(self):
        self.kinds: dict[str, Kind] = {}
        self.cron: dict[str, CronJob] = {}
        self.tasks: dict[str, TaskFunc] = {}
        self.scans: dict[str, ScanJob] = {}
        self.status: list[StatusSection] = []
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> Registry:
        self._frozen = True
        return self

    def _check(self, table: dict, what: str, name: str) -> None:
        if self._frozen:
            raise RegistrationError(f"{what} {name!r} registered after start-up")
        if not name:
            raise RegistrationError(f"{what} needs a name")
        if name in table:
            raise RegistrationError(f"{what} {name!r} registered twice")

    def add_kind(
        self,
        name: str,
        model: type,
        *,
        version: int = 1,
        migrations: dict[int, Callable[[Any], Any]] | None = None,
        derive: Callable[..., None] | None = None,
    ) -> Kind:
        self._check(self.kinds, "kind", name)
        if version < 1:
            raise RegistrationError(f"kind {name!r}: version must be positive, got {version}")
        migrations = dict(migrations or {})
        bad = [v for v in migrations if not 1 < v <= version]
        if bad:
            raise RegistrationError(f"kind {name!r}: migrations for unknown versions {sorted(bad)}")
        kind = Kind(name, model, version, migrations, derive)
        self.kinds[name] = kind
        return kind

    def add_cron(self, name: str, period: timedelta, func: Callable[[Any], None]) -> CronJob:
        self._check(self.cron, "cron job", name)
        if period <= timedelta(0):
            raise RegistrationError(f"cron job {name!r}: period must be positive")
        job = CronJob(name, period, func)
        self.cron[name] = job
        return job

    def add_task(self, name: str, func: Callable[..., None], retry: RetryOptions = DEFAULT_RETRY) -> TaskFunc:
        """Register a task function ``func(ctx, *args)``."""
        self._check(self.tasks, "task", name)
        if not callable(func):
            raise RegistrationError(f"task {name!r}: {func!r} is not callable")
        tf = TaskFunc(name, func, retry, _positional_args(func))
        self.tasks[name] = tf
        return tf

    def add_scan(
        self,
        name: str,
        kind: str,
        where: str,
        period: timedelta,
        handler: Callable[[Any, str, str], None],
    ) -> ScanJob:
        self._check(self.scans, "scan", name)
        scan = ScanJob(name, kind, where, period, handler)
        self.scans[name] = scan
        return scan

    def add_status(self, heading: str, func: Callable[[Any], str]) -> None:
        if self._frozen:
            raise RegistrationError(f"status section {heading!r} registered after start-up")
        self.status.append(StatusSection(heading, func))

    def kind(self, name: str) -> Kind:
        try:
            return self.kinds[name]
        except KeyError as exc:
            raise RegistrationError(f"unknown record kind {name!r}") from exc
