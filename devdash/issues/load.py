"""Incremental Jira issue sync.

Each run asks Jira for issues updated since the stored checkpoint. A
saturated page means the window is too wide: it is narrowed (by 10x while
wider than an hour, then by half) before anything is merged. Once a page
fits, full issue details are fetched, merged one by one, and the
checkpoint moves forward. If the window had to be narrowed the job asks to
run again right away for the rest of the range.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from devdash.core.config import (
    CHECKPOINT_MARGIN,
    DETAIL_MAX_WORKERS,
    DETAIL_MIN_PARALLEL,
    DEV_LOOKBACK,
    EMPTY_WINDOW_MARGIN,
    ISSUE_EPOCH,
    MIN_WINDOW,
    WIDE_WINDOW,
)
from devdash.core.errors import FetchError, MoreWork, ShapeError, StaleWriteError, WindowError
from devdash.core.mappers import map_issue
from devdash.core.models import Issue, Page, parse_iso
from devdash.store.records import Store, field_expr

from .derive import derive_issue, migrate_v2

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)

KIND = "Issue"
CHECKPOINT_KEY = "issue.mtime"
COUNT_KEY = "issue.count"


def shrink(start: datetime, end: datetime) -> datetime:
    span = end - start
    if span > WIDE_WINDOW:
        return start + span / 10
    return start + span / 2


def narrow_window(
    fetch: Callable[[datetime, datetime, int], Page],
    start: datetime,
    end: datetime,
    max_results: int,
) -> tuple[Page, datetime, int]:
    """Fetch ``[start, end]``, shrinking ``end`` until the page is not saturated.

    Returns the page, the final window end and how many times it shrank.
    Raises ``WindowError`` once the window is down to ``MIN_WINDOW``.
    """
    tries = 0
    while True:
        page = fetch(start, end, max_results)
        if not page.truncated:
            return page, end, tries
        logger.warning("too many updates from %s to %s", start, end)
        if end - start <= MIN_WINDOW:
            raise WindowError(f"cannot shorten update window {start}..{end}")
        end = shrink(start, end)
        tries += 1
        logger.info("shortened to %s..%s", start, end)


def initial_checkpoint(ctx: AppContext) -> datetime:
    if ctx.settings.dev_mode:
        return ctx.clock() - DEV_LOOKBACK
    return ISSUE_EPOCH


def read_checkpoint(ctx: AppContext) -> datetime:
    raw = ctx.store.read_meta(CHECKPOINT_KEY)
    return parse_iso(raw) if raw else initial_checkpoint(ctx)


def write_checkpoint(store: Store, old: datetime, new: datetime) -> datetime:
    """Store ``new`` unless it would move the checkpoint backwards."""
    mark = max(old, new)
    store.write_meta(CHECKPOINT_KEY, mark.isoformat())
    return mark


def merge_issue(old: Issue, issue: Issue) -> Issue:
    """Copy tracker-owned fields from ``issue`` onto ``old``.

    Raises ``StaleWriteError`` when ``old`` is newer than ``issue``.
    """
    if issue.deleted:
        old.deleted = True
        return old
    if old.modified > issue.modified:
        raise StaleWriteError(f"issue {issue.key}: have {old.modified} but Jira sent {issue.modified}")
    old.key = issue.key
    old.created = issue.created
    old.modified = issue.modified
    old.title = issue.title
    old.status = issue.status
    old.resolution = issue.resolution
    old.owner = issue.owner
    old.reporter = issue.reporter
    old.cc = list(issue.cc)
    old.labels = list(issue.labels)
    old.comments = list(issue.comments)
    old.state = issue.state
    old.stars = issue.stars
    old.closed_date = issue.closed_date
    old.deleted = False
    return old


def write_issue(store: Store, issue: Issue) -> Issue:
    with store.transaction() as st:
        old = st.find(KIND, issue.key)
        if old is None:
            st.bump_counter(COUNT_KEY)
            old = Issue(key=issue.key)
        merged = merge_issue(old, issue)
        return st.put(KIND, issue.key, merged)


def fetch_details(api, keys: list[str]) -> dict[str, dict[str, Any] | FetchError]:
    """Full issue JSON per key; per-key fetch failures are returned, not raised."""
    results: dict[str, dict[str, Any] | FetchError] = {}

    def _one(key: str) -> dict[str, Any] | FetchError:
        try:
            return api.fetch_issue_raw(key)
        except FetchError as exc:
            return exc

    if len(keys) < DETAIL_MIN_PARALLEL:
        for key in keys:
            results[key] = _one(key)
        return results
    with ThreadPoolExecutor(max_workers=DETAIL_MAX_WORKERS) as pool:
        futures = {pool.submit(_one, key): key for key in keys}
        for fut in as_completed(futures):
            results[futures[fut]] = fut.result()
    return results


def load(ctx: AppContext) -> None:
    if ctx.jira is None:
        logger.warning("issue.load: no Jira client configured")
        return
    start = read_checkpoint(ctx)
    now = ctx.clock()
    try:
        page, end, tries = narrow_window(ctx.jira.fetch_page, start, now, ctx.settings.issue_max_results)
    except FetchError as exc:
        logger.error("load issues since %s: %s", start, exc)
        return

    if not page.records:
        logger.info("no updates found from %s to %s", start, end)
        if tries:
            # A narrowed window may be shorter than EMPTY_WINDOW_MARGIN.
            write_checkpoint(ctx.store, start, end - CHECKPOINT_MARGIN)
            raise MoreWork(f"issues after {end}")
        write_checkpoint(ctx.store, start, end - EMPTY_WINDOW_MARGIN)
        return
    logger.info("%d issues from %s to %s", len(page.records), start, end)

    keys = [r["key"] for r in page.records if r.get("key")]
    details = fetch_details(ctx.jira, keys)

    mtime = start
    for key in keys:
        raw = details[key]
        if isinstance(raw, FetchError):
            if raw.status_code == 404:
                write_issue(ctx.store, Issue(key=key, deleted=True))
                continue
            logger.error("full load of issue %s: %s", key, raw)
            return
        try:
            issue = map_issue(raw, with_comments=True)
        except ShapeError as exc:
            logger.warning("skipping issue %s: %s", key, exc)
            continue
        try:
            write_issue(ctx.store, issue)
        except StaleWriteError as exc:
            logger.error("storing issue %s: %s", key, exc)
            continue
        mtime = max(mtime, issue.modified)

    if tries:
        mtime = end - CHECKPOINT_MARGIN
    write_checkpoint(ctx.store, start, mtime)
    if tries:
        raise MoreWork(f"issues after {end}")


def status(ctx: AppContext) -> str:
    open_count = ctx.store.count(KIND, f"{field_expr('active')} = 1")
    lines = [
        f"issue modifications up to {ctx.store.read_meta(CHECKPOINT_KEY, 'never')}",
        f"{ctx.store.read_meta(COUNT_KEY, 0)} issues total",
        f"{open_count} open",
    ]
    return "\n".join(lines) + "\n"


def register(registry) -> None:
    registry.add_kind(KIND, Issue, version=2, migrations={2: migrate_v2}, derive=derive_issue)
    registry.add_cron("issue.load", timedelta(minutes=5), load)
    registry.add_status("issue loading", status)
