"""Code-review sync: search polling, CL merge, and the per-CL follow-up loaders.

``load`` polls the review server for CLs that list one of the review
groups as reviewer or CC, one cursor-paged search per (axis, group), and
merges each result. Search results carry no messages, so every changed CL
drops back to ``messages_loaded = False`` and is picked up by the
``codereview.loadmsg`` scan; new patch sets are handled the same way by
``codereview.loadpatch``.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import TYPE_CHECKING

from devdash.core.config import DEV_LOOKBACK, MAX_FILES, REPO_HOST_PREFIX, REVIEW_EPOCH, WORK_BUDGET
from devdash.core.errors import FetchError, MoreWork, RetryTask, ShapeError, StaleWriteError
from devdash.core.mappers import format_review_time, map_cl, map_patch
from devdash.core.models import CL, Patch, ReviewTodo
from devdash.sched.scan import register_scan
from devdash.store.records import Store, field_expr

from .derive import derive_cl, migrate_v2

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)

KIND = "CL"
PATCH_KIND = "Patch"
TODO_KIND = "ReviewTodo"
COUNT_KEY = "codereview.count"
LOADMSG_SCAN = "codereview.loadmsg"
AXES = ("reviewer", "cc")

DIFF_RE = re.compile(r"diff -r [0-9a-f]+ https?://(?:[^/]*@)?(code\.google\.com/[pr]/[a-z0-9_.\-]+)")
DIFF_HOST_RE = re.compile(r"diff -r [0-9a-f]+ https?://(?:[^/]*@)?([a-z0-9_\-]+)\.googlecode\.com")
DIFF_SUBREPO_RE = re.compile(r"diff -r [0-9a-f]+ https?://(?:[^/]*@)?([a-z0-9_\-]+)\.([a-z0-9_\-]+)\.googlecode\.com")


def checkpoint_key(axis: str, group: str) -> str:
    return f"codereview.mtime.{axis}.{group}"


def merge_cl(old: CL, cl: CL) -> CL:
    """Copy review-server fields from ``cl`` onto ``old``, keeping loader-owned state.

    Raises ``StaleWriteError`` when ``old`` is newer than ``cl``.
    """
    if cl.dead:
        old.cl = old.cl or cl.cl
        old.dead = True
        return old
    if old.modified > cl.modified:
        raise StaleWriteError(f"CL {cl.cl}: have {old.modified} but review server sent {cl.modified}")
    old.dead = False
    old.cl = cl.cl
    old.desc = cl.desc
    old.owner = cl.owner
    old.owner_email = cl.owner_email
    old.created = cl.created
    old.modified = cl.modified
    old.messages_loaded = cl.messages_loaded
    if cl.messages_loaded:
        old.messages = list(cl.messages)
    old.reviewers = list(cl.reviewers)
    old.cc = list(cl.cc)
    old.closed = cl.closed
    if old.patch_sets != cl.patch_sets:
        old.patch_sets = list(cl.patch_sets)
        old.patch_sets_loaded = False
    return old


def write_cl(store: Store, cl: CL, checkpoint: tuple[str, str] | None = None) -> CL:
    """Merge ``cl`` and, in the same transaction, advance ``checkpoint`` (key, value)."""
    with store.transaction() as st:
        old = st.find(KIND, cl.cl)
        if old is None:
            st.bump_counter(COUNT_KEY)
            old = CL(cl=cl.cl)
        stored = st.put(KIND, cl.cl, merge_cl(old, cl))
        if checkpoint:
            key, value = checkpoint
            if value > (st.read_meta(key) or ""):
                st.write_meta(key, value)
        return stored


def _start_mtime(ctx: AppContext, key: str) -> str:
    default = REVIEW_EPOCH
    if ctx.settings.dev_mode:
        default = format_review_time(ctx.clock() - DEV_LOOKBACK)
    mtime = ctx.store.read_meta(key) or default
    # The server rejects fractional seconds in modified_after; we see a few CLs twice.
    return mtime.split(".", 1)[0]


def load(ctx: AppContext) -> None:
    deadline = ctx.clock() + WORK_BUDGET
    page_size = ctx.settings.review_page_size
    for group in ctx.settings.review_groups:
        for axis in AXES:
            mtime_key = checkpoint_key(axis, group)
            todo_key = f"{axis}.{group}"
            todo = ctx.store.find(TODO_KIND, todo_key)
            if todo is not None:
                mtime, cursor = todo.modified_after, todo.cursor
                logger.info("resuming codereview by %s from cursor", todo_key)
            else:
                mtime, cursor = _start_mtime(ctx, mtime_key), ""

            while True:
                try:
                    page = ctx.review.search(axis, group, mtime, cursor, page_size)
                except FetchError as exc:
                    logger.error("loading codereview by %s: %s", todo_key, exc)
                    break
                logger.info("found %d CLs", len(page.records))
                if not page.records:
                    _finish_axis(ctx, todo_key, todo)
                    break
                cursor = page.next_cursor
                for raw in page.records:
                    try:
                        cl = map_cl(raw)
                    except ShapeError as exc:
                        logger.warning("skipping search result: %s", exc)
                        continue
                    try:
                        write_cl(ctx.store, cl, (mtime_key, raw.get("modified") or ""))
                    except StaleWriteError as exc:
                        logger.error("storing CL %s: %s", cl.cl, exc)
                if len(page.records) < page_size:
                    logger.info("reached end of results - codereview by %s up to date", todo_key)
                    _finish_axis(ctx, todo_key, todo)
                    break
                if ctx.clock() > deadline:
                    ctx.store.put(
                        TODO_KIND,
                        todo_key,
                        ReviewTodo(axis=todo_key, cursor=cursor, modified_after=mtime, started=ctx.clock()),
                    )
                    logger.info("more to do for codereview by %s - rescheduling", todo_key)
                    raise MoreWork(f"codereview by {todo_key}")
    logger.info("all done")


def _finish_axis(ctx: AppContext, todo_key: str, todo: ReviewTodo | None) -> None:
    if todo is not None:
        ctx.store.delete(TODO_KIND, todo_key)


# ------------------ follow-up scans ------------------


def loadmsg(ctx: AppContext, kind: str, key: str) -> None:
    """Reload one CL with its full message thread; a 404 marks it dead."""
    try:
        raw = ctx.review.issue(key, messages=True)
    except FetchError as exc:
        if exc.status_code == 404:
            logger.info("CL %s is gone, marking dead", key)
            write_cl(ctx.store, CL(cl=key, dead=True))
        else:
            logger.error("loadmsg %s: %s", key, exc)
        return
    try:
        cl = map_cl(raw)
    except ShapeError as exc:
        logger.error("loadmsg %s: %s", key, exc)
        return
    cl.messages_loaded = True
    try:
        write_cl(ctx.store, cl)
    except StaleWriteError as exc:
        logger.error("storing CL %s: %s", key, exc)


def patch_repo(message: str) -> str:
    """Repository named in a patch set's diff header, or ``""``."""
    if m := DIFF_RE.search(message):
        return m.group(1)
    if m := DIFF_HOST_RE.search(message):
        return REPO_HOST_PREFIX + m.group(1)
    if m := DIFF_SUBREPO_RE.search(message):
        return f"{REPO_HOST_PREFIX}{m.group(2)}.{m.group(1)}"
    return ""


def loadpatch(ctx: AppContext, kind: str, key: str) -> None:
    """Store every patch set of a CL and record the last one's files, delta and repository."""
    logger.info("loadpatch %s", key)
    cl = ctx.store.find(KIND, key)
    if cl is None or cl.patch_sets_loaded:
        return

    last: Patch | None = None
    for ps in cl.patch_sets:
        try:
            p = map_patch(ctx.review.patch(key, ps))
        except FetchError as exc:
            logger.error("loadpatch %s/%s: %s", key, ps, exc)
            return
        p.cl = p.cl or key
        p.patch_set = ps
        ctx.store.put(PATCH_KIND, f"{key}/{ps}", p)
        last = p

    with ctx.store.transaction() as st:
        old = st.get(KIND, key)
        if len(old.patch_sets) > len(cl.patch_sets):
            raise RetryTask(f"CL {key}: more patch sets added")
        old.patch_sets_loaded = True
        names = [f.name for f in last.files] if last else []
        old.delta = sum(f.num_added + f.num_removed for f in last.files) if last else 0
        old.files = names[:MAX_FILES]
        old.more_files = len(names) > MAX_FILES
        if last is not None:
            old.files_modified = last.modified
            old.patch_repo = patch_repo(last.message) or old.patch_repo
        st.put(KIND, key, old)


def mailissue(ctx: AppContext, kind: str, key: str) -> None:
    """Tell each referenced tracker issue about the CL, once."""
    logger.info("mailissue %s", key)
    cl = ctx.store.find(KIND, key)
    if cl is None or not cl.need_mail_issue:
        return
    if ctx.jira is None:
        logger.warning("mailissue %s: no Jira client configured", key)
        return
    mailed = []
    for issue in cl.need_mail_issue:
        try:
            ctx.jira.post_comment(issue, f"CL {ctx.settings.review_url(cl.cl)} mentions this issue.")
        except FetchError as exc:
            logger.error("posting to issue %s: %s", issue, exc)
            continue
        mailed.append(issue)
    if not mailed:
        return
    with ctx.store.transaction() as st:
        old = st.get(KIND, key)
        old.mailed_issue = old.mailed_issue + mailed
        st.put(KIND, key, old)


def status(ctx: AppContext) -> str:
    store = ctx.store
    lines = []
    for group in ctx.settings.review_groups:
        for axis in AXES:
            key = checkpoint_key(axis, group)
            lines.append(f"{store.read_meta(key, 'never')} last update for {key}")
    lines.append(f"{store.read_meta(COUNT_KEY, 0)} CLs total")
    lines.append(f"{store.count(KIND, PATCH_WHERE)} with patch_sets_loaded = false")
    lines.append(f"{store.count(KIND, MSG_WHERE)} with messages_loaded = false")
    lines.append(f"{store.count(TODO_KIND)} searches in progress")
    lines.append(f"{store.count(KIND, ACTIVE_WHERE)} active CLs")
    lines.append(f"{store.count(KIND, MAIL_WHERE)} CLs need issue mails")
    return "\n".join(lines) + "\n"


MSG_WHERE = field_expr("messages_loaded") + " = 0"
PATCH_WHERE = field_expr("patch_sets_loaded") + " = 0"
ACTIVE_WHERE = field_expr("active") + " = 1"
MAIL_WHERE = ACTIVE_WHERE + " AND json_array_length(data, '$.need_mail_issue') > 0"


def register(registry) -> None:
    registry.add_kind(KIND, CL, version=2, migrations={2: migrate_v2}, derive=derive_cl)
    registry.add_kind(PATCH_KIND, Patch)
    registry.add_kind(TODO_KIND, ReviewTodo)
    registry.add_cron("codereview.load", timedelta(minutes=1), load)
    register_scan(registry, LOADMSG_SCAN, KIND, MSG_WHERE, timedelta(minutes=1), loadmsg)
    register_scan(registry, "codereview.loadpatch", KIND, PATCH_WHERE, timedelta(minutes=1), loadpatch)
    register_scan(registry, "codereview.mail", KIND, MAIL_WHERE, timedelta(minutes=15), mailissue)
    registry.add_status("codereview", status)
