"""Mapping raw Jira issue JSON and review-server JSON into domain records."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pandas as pd

from .errors import ShapeError
from .models import CL, EPOCH, Comment, Issue, Message, Patch, PatchFile

REVIEW_TIME_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S")


def parse_dt(val: Any) -> datetime | None:
    if not val:
        return None
    ts = pd.to_datetime(val, utc=True, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    return ts.to_pydatetime()


def parse_review_time(value: str | None) -> datetime:
    """Decode a review-server timestamp (UTC); unparsable values become the epoch."""
    for fmt in REVIEW_TIME_FORMATS:
        try:
            return datetime.strptime(value or "", fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return EPOCH


def format_review_time(ts: datetime) -> str:
    return ts.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S")


def adf_text(node: Any) -> str:
    """Flatten an Atlassian document (or plain string) body to text."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    parts: list[str] = []

    def walk(n: Any):
        if isinstance(n, dict):
            if n.get("type") == "text":
                parts.append(n.get("text", ""))
            elif n.get("type") == "hardBreak":
                parts.append("\n")
            elif n.get("type") == "mention":
                parts.append((n.get("attrs") or {}).get("text", ""))
            for child in n.get("content", []) or []:
                walk(child)
            if n.get("type") in ("paragraph", "heading", "codeBlock", "listItem"):
                parts.append("\n")
        elif isinstance(n, list):
            for item in n:
                walk(item)

    walk(node)
    return "".join(parts).strip("\n")


def _person(value: Any) -> str:
    if not isinstance(value, dict):
        return ""
    return value.get("emailAddress") or value.get("displayName") or ""


def map_issue(raw: dict[str, Any], *, with_comments: bool = False) -> Issue:
    key = raw.get("key")
    fields = raw.get("fields")
    if not key or not isinstance(fields, dict):
        raise ShapeError(f"issue payload without key/fields: {str(raw)[:200]}")
    status = fields.get("status") or {}
    category = (status.get("statusCategory") or {}).get("key")

    watches = fields.get("watches") or {}
    watchers = [_person(w) for w in (watches.get("watchers") or []) if isinstance(w, dict)]

    comments: list[Comment] = []
    if with_comments:
        comments_raw = (fields.get("comment") or {}).get("comments", []) or []
        comments = [
            Comment(
                author=_person(c.get("author")),
                time=parse_dt(c.get("created")) or EPOCH,
                text=adf_text(c.get("body")),
            )
            for c in comments_raw
        ]

    return Issue(
        key=key,
        created=parse_dt(fields.get("created")) or EPOCH,
        modified=parse_dt(fields.get("updated")) or EPOCH,
        title=fields.get("summary") or "",
        status=status.get("name") or "",
        resolution=(fields.get("resolution") or {}).get("name") or "",
        owner=_person(fields.get("assignee")),
        reporter=_person(fields.get("reporter")),
        cc=[w for w in watchers if w],
        labels=list(fields.get("labels", []) or []),
        comments=comments,
        state="closed" if category == "done" else "open",
        stars=int((fields.get("votes") or {}).get("votes") or 0),
        closed_date=parse_dt(fields.get("resolutiondate")),
    )


def map_message(raw: dict[str, Any]) -> Message:
    return Message(
        sender=raw.get("sender") or "",
        text=raw.get("text") or "",
        time=parse_review_time(raw.get("date")),
    )


def map_cl(raw: dict[str, Any]) -> CL:
    issue = raw.get("issue")
    if issue in (None, ""):
        raise ShapeError(f"review payload without issue id: {str(raw)[:200]}")
    messages = [map_message(m) for m in raw.get("messages") or []]
    messages.sort(key=lambda m: m.time)
    return CL(
        cl=str(issue),
        desc=raw.get("description") or "",
        owner=raw.get("owner") or "",
        owner_email=raw.get("owner_email") or "",
        created=parse_review_time(raw.get("created")),
        modified=parse_review_time(raw.get("modified")),
        messages=messages,
        reviewers=list(raw.get("reviewers") or []),
        cc=list(raw.get("cc") or []),
        closed=bool(raw.get("closed")),
        patch_sets=[str(p) for p in raw.get("patchsets") or []],
    )


def map_patch(raw: dict[str, Any]) -> Patch:
    files = raw.get("files") or {}
    return Patch(
        cl=str(raw.get("issue", "")),
        patch_set=str(raw.get("patchset", "")),
        files=[
            PatchFile(
                name=name,
                status=f.get("status") or "",
                num_chunks=int(f.get("num_chunks") or 0),
                no_base_file=bool(f.get("no_base_file")),
                property_changes=f.get("property_changes") or "",
                num_added=int(f.get("num_added") or 0),
                num_removed=int(f.get("num_removed") or 0),
                id=str(f.get("id", "")),
                is_binary=bool(f.get("is_binary")),
            )
            for name, f in sorted(files.items())
        ],
        created=parse_review_time(raw.get("created")),
        modified=parse_review_time(raw.get("modified")),
        owner=raw.get("owner") or "",
        num_comments=int(raw.get("num_comments") or 0),
        message=raw.get("message") or "",
    )
