"""Derived Issue fields, recomputed on every read and write."""

from __future__ import annotations

from datetime import datetime

from devdash.core.config import RELEASE_LABEL_PREFIX, Settings
from devdash.core.models import Issue
from devdash.core.text import desc_dir, summary_line


def derive_issue(issue: Issue, now: datetime, settings: Settings) -> None:
    issue.summary = summary_line(issue.title)
    issue.active = issue.state == "open" and not issue.deleted
    issue.dir = desc_dir(issue.title)
    issue.milestones = sorted(label for label in issue.labels if label.startswith(RELEASE_LABEL_PREFIX))


def migrate_v2(issue: Issue) -> Issue:
    # v1 stored multi-line titles from the old feed.
    issue.title = " ".join(issue.title.split("\n"))
    return issue
