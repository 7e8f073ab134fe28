"""Application wiring: registry construction, the shared context and the status dump."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from importlib import import_module

from devdash.core.config import Settings
from devdash.core.config_loader import load_settings
from devdash.core.jira_client import JiraAPI
from devdash.core.registry import Registry
from devdash.core.review_client import ReviewAPI
from devdash.store.db import Database
from devdash.store.records import Store

logger = logging.getLogger(__name__)

# Each module exposes register(registry); order only affects the status page.
MODULES = (
    "devdash.sched.tasks",
    "devdash.sched.cron",
    "devdash.sched.scan",
    "devdash.store.update",
    "devdash.issues.load",
    "devdash.codereview.load",
    "devdash.dash.assemble",
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def build_registry(modules: tuple[str, ...] = MODULES) -> Registry:
    registry = Registry()
    for name in modules:
        import_module(name).register(registry)
    return registry.freeze()


@dataclass(slots=True)
class AppContext:
    settings: Settings
    store: Store
    registry: Registry
    review: ReviewAPI
    jira: JiraAPI | None = None
    clock: Callable[[], datetime] = field(default=utc_now)


def open_app(
    settings: Settings | None = None,
    *,
    jira: JiraAPI | None = None,
    review: ReviewAPI | None = None,
    clock: Callable[[], datetime] = utc_now,
    registry: Registry | None = None,
) -> AppContext:
    """Build a context from settings; clients default to real ones when configured."""
    settings = settings or load_settings()
    registry = registry or build_registry()
    if jira is None and settings.jira_email and settings.jira_token:
        jira = JiraAPI(
            settings.jira_server, settings.jira_email, settings.jira_token, settings.project_key, settings.timezone
        )
    if jira is None:
        logger.warning("Jira credentials not configured; issue sync is disabled")
    review = review or ReviewAPI(settings.review_server, settings.review_login_url)
    store = Store(Database(settings.db_path), registry, clock, settings)
    return AppContext(settings=settings, store=store, registry=registry, review=review, jira=jira, clock=clock)


def status_text(ctx: AppContext) -> str:
    """Plain-text operational status, one section per registered heading."""
    parts = [f"status at {ctx.clock().isoformat()}\n"]
    for section in ctx.registry.status:
        parts.append(f"\n== {section.heading} ==\n")
        try:
            parts.append(section.func(ctx))
        except Exception as exc:
            logger.exception("status section %s failed", section.heading)
            parts.append(f"error: {exc}\n")
    return "".join(parts)
