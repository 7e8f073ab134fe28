"""Admin-triggered CL operations: reassign the reviewer, force a reload."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from devdash.core.config import DEFAULT_REVIEWER
from devdash.core.errors import FetchError, NotFound
from devdash.sched import scan
from devdash.store.records import META

from .derive import CLOSE, roster_for
from .load import KIND, LOADMSG_SCAN

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)

CREDENTIALS_KEY = "codereview.bot.pw"


def refresh_cl(ctx: AppContext, cl: str) -> bool:
    """Reload ``cl`` now; returns False if a queued reload already holds it."""
    return scan.run_locked(ctx, LOADMSG_SCAN, KIND, cl)


def set_reviewer(ctx: AppContext, cl: str, who: str, actor: str) -> None:
    """Post ``R=<who>`` on ``cl`` (adding ``who`` to its reviewers) and reload it.

    ``who`` may be ``close`` or a review group, which are announced but not
    added to the reviewer list. Errors are raised for the caller to show.
    """
    if not cl.isdigit():
        raise ValueError(f"invalid cl number {cl!r}")
    if not actor:
        raise ValueError("must be logged in")
    creds = ctx.store.read_meta(CREDENTIALS_KEY)
    if not isinstance(creds, dict) or not creds.get("user"):
        raise NotFound(META, CREDENTIALS_KEY)

    try:
        ctx.review.login(creds["user"], creds.get("password", ""))
        issue = ctx.review.issue(cl, messages=False)
        reviewers = list(issue.get("reviewers") or [])
        cc = list(issue.get("cc") or [])
        if who != CLOSE and who != DEFAULT_REVIEWER and not roster_for(ctx.settings).is_group(who):
            reviewers.append(who)
        ctx.review.add_comment(cl, f"R={who} (assigned by {actor})", reviewers, cc)
    except FetchError as exc:
        logger.error("set reviewer on CL %s: %s", cl, exc)
        raise
    logger.info("CL %s: R=%s by %s", cl, who, actor)
    refresh_cl(ctx, cl)
