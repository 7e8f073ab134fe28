"""Derived CL fields: review state from the message thread, activity and directory attribution.

``derive_cl`` is installed as the ``CL`` kind's derive hook, so it runs on
every read and write. It only looks at raw and loader-owned fields and
overwrites every derived field, so its output never depends on what was
derived before.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from devdash.core.config import (
    ACTIVE_MAX_AGE,
    DEFAULT_REVIEWER,
    MAIN_REPO,
    REPO_HOST_PREFIX,
    REVIEW_GROUPS,
    REVIEWER_ALT_DOMAINS,
    TEST_DIR_PENALTY,
    Settings,
)
from devdash.core.models import CL
from devdash.core.text import issue_refs, summary_line

REVIEWER_RE = re.compile(r"^(?:TB)?R=([\w\-.]+)\b", re.M)
LGTM_RE = re.compile(r"^LGTM", re.I | re.M)
NOT_LGTM_RE = re.compile(r"^NOT LGTM", re.I | re.M)
HELLO_RE = re.compile(r"Hello ([\w\-.]+)[ ,@][^\n]*\s+^I'd like you to review this change", re.M)
HELLO_REPO_RE = re.compile(
    r"Hello[^\n]+\n\nI'd like you to review this change to\nhttps?://(?:[^/]*@)?(code\.google\.com/[pr]/[a-z0-9_.\-]+)",
    re.M,
)
HELLO_REPO_HOST_RE = re.compile(
    r"Hello[^\n]+\n\nI'd like you to review this change to\nhttps?://(?:[^/]*@)?([a-z0-9_\-]+)\.googlecode\.com",
    re.M,
)
PTAL_RE = re.compile(r"^(PTAL|Please take a(nother)? look|I'd like you to review this change)", re.I | re.M)
SUBMITTED_MARK = "*** Submitted as"
CLOSE = "close"


@dataclass(frozen=True)
class Roster:
    """The set of addresses whose messages count as reviews."""

    reviewers: tuple[str, ...]
    alt_domains: tuple[tuple[str, str], ...] = tuple(REVIEWER_ALT_DOMAINS.items())
    groups: tuple[str, ...] = tuple(REVIEW_GROUPS)

    def is_reviewer(self, addr: str) -> str:
        """Roster entry for ``addr`` (or its alternate-domain twin), else ``""``."""
        candidates = {addr}
        for src, dst in self.alt_domains:
            if addr.endswith("@" + src):
                candidates.add(addr[: -len(src)] + dst)
        for r in self.reviewers:
            if r in candidates:
                return r
        return ""

    def expand(self, short: str) -> str:
        """Roster entry for a bare nickname (or a full address)."""
        if "@" in short:
            return self.is_reviewer(short)
        for r in self.reviewers:
            if r.split("@", 1)[0] == short:
                return r
        return ""

    def is_group(self, name: str) -> bool:
        return name in self.groups


@lru_cache(maxsize=8)
def _roster(reviewers: tuple[str, ...], groups: tuple[str, ...]) -> Roster:
    return Roster(reviewers=reviewers, groups=groups)


def roster_for(settings: Settings) -> Roster:
    return _roster(tuple(settings.reviewers), tuple(settings.review_groups))


def normalize_repo(repo: str) -> str:
    """Shorten hosted main-repository paths (``code.google.com/p/go.tools`` -> ``go.tools``)."""
    main = REPO_HOST_PREFIX + MAIN_REPO
    if repo == main or repo.startswith(main + "."):
        return repo[len(REPO_HOST_PREFIX):]
    return repo


def parse_messages(cl: CL, roster: Roster) -> None:
    """Set mailed/submitted, LGTM lists, primary reviewer and needs_review from ``cl.messages``.

    Primary reviewer priority:
      1. if submitted, the first LGTM;
      2. the last explicit ``R=`` line;
      3. the target of the initial review request;
      4. the first reviewer other than the owner to respond.
    """
    lgtm: dict[str, bool] = {}
    not_lgtm: dict[str, bool] = {}
    initial = explicit = first_responder = ""
    hello_repo = ""
    owner_reviewer = roster.is_reviewer(cl.owner_email)

    cl.mailed = False
    cl.submitted = False
    for m in cl.messages:
        sender_reviewer = roster.is_reviewer(m.sender)
        if sender_reviewer:
            if NOT_LGTM_RE.search(m.text):
                not_lgtm[m.sender] = True
                lgtm.pop(m.sender, None)
            elif LGTM_RE.search(m.text):
                lgtm[m.sender] = True
                not_lgtm.pop(m.sender, None)
        if hello := HELLO_RE.search(m.text):
            cl.mailed = True
            if who := roster.expand(hello.group(1)):
                initial = who
        if not hello_repo:
            if repo := HELLO_REPO_RE.search(m.text):
                hello_repo = repo.group(1)
            elif repo := HELLO_REPO_HOST_RE.search(m.text):
                hello_repo = REPO_HOST_PREFIX + repo.group(1)
        if SUBMITTED_MARK in m.text:
            cl.submitted = True
        if r := REVIEWER_RE.search(m.text):
            name = r.group(1)
            if name == CLOSE:
                explicit = CLOSE
            elif roster.is_group(name):
                explicit = DEFAULT_REVIEWER
            elif who := roster.expand(name):
                explicit = who
        if (
            sender_reviewer
            and not first_responder
            and m.sender != cl.owner_email
            and sender_reviewer != owner_reviewer
        ):
            first_responder = sender_reviewer

    cl.lgtm = sorted(lgtm)
    cl.not_lgtm = sorted(not_lgtm)
    if cl.submitted and cl.lgtm:
        primary = cl.lgtm[0]
    else:
        primary = explicit or initial or first_responder
    cl.primary_reviewer = "" if primary == DEFAULT_REVIEWER else primary
    cl.repo = normalize_repo(cl.patch_repo or hello_repo)

    if cl.submitted:
        cl.needs_review = not cl.lgtm
    else:
        cl.needs_review = False
        for m in cl.messages:
            if PTAL_RE.search(m.text):
                cl.needs_review = True
            if m.sender == cl.primary_reviewer:
                cl.needs_review = False


def dirs(files: Iterable[str], repo: str) -> list[str]:
    """Directories the files touch, most frequent first (ties by name)."""
    prefix = f"{repo}/" if repo and repo != MAIN_REPO else ""
    counts: Counter[str] = Counter()
    for path in files:
        name = path.rsplit("/", 1)[0] if "/" in path else ""
        for strip in ("src/pkg/", "src/"):
            if name.startswith(strip):
                name = name[len(strip):]
                break
        if name == "src":
            name = ""
        name = prefix + name
        counts[name or "build"] += 1
    if "test" in counts:
        counts["test"] -= TEST_DIR_PENALTY
    return [name for name, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]


def is_active(cl: CL, now: datetime) -> bool:
    return (
        cl.mailed
        and cl.has_reviewers
        and cl.messages_loaded
        and cl.patch_sets_loaded
        and not cl.closed
        and not cl.submitted
        and not cl.dead
        and now - cl.modified < ACTIVE_MAX_AGE
        and cl.primary_reviewer != CLOSE
    )


def _need_mail(desc_issue: Sequence[str], mailed: Sequence[str]) -> list[str]:
    seen = set(mailed)
    out = []
    for key in desc_issue:
        if key not in seen:
            out.append(key)
            seen.add(key)
    return sorted(out)


def derive_cl(cl: CL, now: datetime, settings: Settings) -> None:
    if cl.dead:
        cl.messages_loaded = True
        cl.patch_sets_loaded = True
    parse_messages(cl, roster_for(settings))
    cl.has_reviewers = bool(cl.reviewers)
    cl.active = is_active(cl, now)
    cl.dirs = dirs(cl.files, cl.repo)
    cl.desc_issue = issue_refs(cl.desc, settings.project_key)
    cl.mailed_issue = sorted(set(cl.mailed_issue))
    cl.need_mail_issue = _need_mail(cl.desc_issue, cl.mailed_issue) if cl.active else []
    cl.summary = summary_line(cl.desc)


def migrate_v2(cl: CL) -> CL:
    """Older records carried the hosting prefix on the main repository path."""
    cl.patch_repo = normalize_repo(cl.patch_repo)
    return cl
