"""Dashboard assembly: active CLs and release issues grouped by directory."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pandas as pd
import pytz

from devdash.codereview.derive import roster_for
from devdash.core.config import DEFAULT_REVIEWER, GLOBAL_DIR_TAGS
from devdash.core.models import CL, Issue, UserPref
from devdash.core.text import desc_dir, short_email
from devdash.store.records import field_expr

if TYPE_CHECKING:
    from devdash.app import AppContext

logger = logging.getLogger(__name__)

PREF_KIND = "UserPref"
FIXES_RE = re.compile(r"Fixes issue (\d+)")
CHUNK = 1000


@dataclass(slots=True)
class Item:
    bug: Issue | None = None
    cls: list[CL] = field(default_factory=list)
    todo: bool = False

    @property
    def summary(self) -> str:
        if self.bug is not None:
            return self.bug.summary
        return self.cls[0].summary if self.cls else ""


@dataclass(slots=True)
class Group:
    dir: str
    items: list[Item] = field(default_factory=list)
    todo: bool = False
    muted: bool = False


@dataclass(slots=True)
class Dashboard:
    user: str
    groups: list[Group]
    todo_cls: set[str] = field(default_factory=set)


def dir_key(name: str) -> str:
    """Sort key putting sub-repository (dotted) directories last."""
    return "\x7f" + name if "." in name else name


def item_dir(item: Item) -> str:
    for cl in item.cls[:1]:
        desc = desc_dir(cl.summary)
        if desc in GLOBAL_DIR_TAGS:
            return desc
        if desc and desc in cl.dirs:
            return desc
        if cl.dirs:
            return cl.dirs[0]
        return desc
    if item.bug is not None:
        return desc_dir(item.bug.summary) or "?"
    return "?"


def cl_bugs(cl: CL, project: str) -> list[str]:
    return [f"{project}-{n}" for n in FIXES_RE.findall(cl.desc) if int(n) > 0]


def default_reviewer(cl: CL) -> str:
    return cl.primary_reviewer or DEFAULT_REVIEWER


class Viewer:
    """Who is looking at the dashboard; decides todo and mute state."""

    def __init__(self, addr: str, muted: list[str] | None = None):
        self.addr = addr
        self.muted = set(muted or [])

    def is_me(self, addr: str) -> bool:
        return addr == DEFAULT_REVIEWER or bool(self.addr) and addr == self.addr

    def todo(self, cl: CL) -> bool:
        if cl.needs_review:
            return self.is_me(default_reviewer(cl))
        return self.is_me(cl.owner_email)


def build_dashboard(ctx: AppContext, user: str = "") -> Dashboard:
    store = ctx.store
    settings = ctx.settings
    me = roster_for(settings).is_reviewer(user) if user else ""
    pref = store.find(PREF_KIND, me) if me else None
    viewer = Viewer(me, pref.muted if pref else None)

    # Stored flags can lag (age limit); trust the re-derived value.
    cls = [cl for cl in store.query("CL", f"{field_expr('active')} = 1", limit=CHUNK) if cl.active]
    bugs = [
        bug
        for bug in store.query(
            "Issue",
            f"{field_expr('state')} = 'open' AND EXISTS "
            "(SELECT 1 FROM json_each(data, '$.labels') WHERE json_each.value = ?)",
            (settings.dashboard_label,),
            limit=CHUNK,
        )
        if bug.active
    ]

    groups: dict[str, Group] = {}
    items_by_bug: dict[str, Item] = {}

    def add(item: Item) -> None:
        name = item_dir(item)
        groups.setdefault(dir_key(name), Group(dir=name)).items.append(item)

    for bug in bugs:
        item = Item(bug=bug)
        add(item)
        items_by_bug[bug.key] = item
    for cl in cls:
        targets = [items_by_bug[k] for k in cl_bugs(cl, settings.project_key) if k in items_by_bug]
        for item in targets:
            item.cls.append(cl)
        if not targets:
            add(Item(cls=[cl]))

    todo_cls = {cl.cl for cl in cls if viewer.todo(cl)}
    out = []
    for key in sorted(groups):
        g = groups[key]
        g.items.sort(key=lambda it: it.summary)
        for item in g.items:
            item.todo = any(cl.cl in todo_cls for cl in item.cls)
        g.todo = any(item.todo for item in g.items)
        g.muted = g.dir in viewer.muted
        out.append(g)
    logger.info("dashboard for %s: %d CLs, %d issues, %d groups", me or "anonymous", len(cls), len(bugs), len(out))
    return Dashboard(user=me, groups=out, todo_cls=todo_cls)


def dashboard_frame(dash: Dashboard, tz: str = "UTC") -> pd.DataFrame:
    """One row per CL or issue, in display order."""
    zone = pytz.timezone(tz)
    rows = []
    for g in dash.groups:
        for item in g.items:
            if item.bug is not None:
                rows.append(
                    {
                        "dir": g.dir,
                        "kind": "issue",
                        "id": item.bug.key,
                        "summary": item.bug.summary,
                        "owner": short_email(item.bug.owner),
                        "reviewer": "",
                        "modified": item.bug.modified.astimezone(zone),
                        "todo": item.todo,
                        "muted": g.muted,
                    }
                )
            for cl in item.cls:
                rows.append(
                    {
                        "dir": g.dir,
                        "kind": "cl",
                        "id": cl.cl,
                        "summary": cl.summary,
                        "owner": short_email(cl.owner_email),
                        "reviewer": short_email(default_reviewer(cl)),
                        "modified": cl.modified.astimezone(zone),
                        "todo": cl.cl in dash.todo_cls,
                        "muted": g.muted,
                    }
                )
    columns = ["dir", "kind", "id", "summary", "owner", "reviewer", "modified", "todo", "muted"]
    return pd.DataFrame(rows, columns=columns)


def set_muted(ctx: AppContext, user: str, directory: str, muted: bool) -> UserPref:
    """Mute or unmute ``directory`` on ``user``'s dashboard."""
    if not user:
        raise ValueError("must be logged in")
    if not directory:
        raise ValueError("missing dir")
    with ctx.store.transaction() as st:
        pref = st.find(PREF_KIND, user) or UserPref()
        current = set(pref.muted)
        if muted:
            current.add(directory)
        else:
            current.discard(directory)
        pref.muted = sorted(current)
        return st.put(PREF_KIND, user, pref)


def register(registry) -> None:
    registry.add_kind(PREF_KIND, UserPref)
