"""Domain data models for tracker issues, code reviews and bookkeeping records."""

from __future__ import annotations

import json
import types
import typing
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from datetime import UTC, date, datetime
from functools import cache
from typing import Any, get_args, get_origin, get_type_hints

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(slots=True)
class Comment:
    author: str = ""
    time: datetime = EPOCH
    text: str = ""


@dataclass(slots=True)
class Issue:
    dv: int = 0

    # Mirrored from the tracker.
    key: str = ""
    created: datetime = EPOCH
    modified: datetime = EPOCH
    title: str = ""
    status: str = ""
    resolution: str = ""
    owner: str = ""
    reporter: str = ""
    cc: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    state: str = "open"
    stars: int = 0
    closed_date: datetime | None = None
    deleted: bool = False

    # Derived fields (see issues.derive).
    summary: str = ""
    active: bool = False
    dir: str = ""
    milestones: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Message:
    sender: str = ""
    text: str = ""
    time: datetime = EPOCH


@dataclass(slots=True)
class CL:
    dv: int = 0

    # Mirrored from the review server. If you add a field here, update
    # codereview.load.merge_cl.
    cl: str = ""
    desc: str = ""
    owner: str = ""
    owner_email: str = ""
    created: datetime = EPOCH
    modified: datetime = EPOCH
    messages: list[Message] = field(default_factory=list)
    reviewers: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    closed: bool = False
    patch_sets: list[str] = field(default_factory=list)
    dead: bool = False

    # Owned by the follow-up loaders.
    messages_loaded: bool = False
    patch_sets_loaded: bool = False
    files: list[str] = field(default_factory=list)
    more_files: bool = False  # files list truncated
    files_modified: datetime | None = None
    delta: int = 0  # lines added + removed in the last patch set
    patch_repo: str = ""
    mailed_issue: list[str] = field(default_factory=list)

    # Derived fields (see codereview.derive).
    summary: str = ""
    has_reviewers: bool = False
    mailed: bool = False
    submitted: bool = False
    active: bool = False
    repo: str = ""
    dirs: list[str] = field(default_factory=list)
    lgtm: list[str] = field(default_factory=list)
    not_lgtm: list[str] = field(default_factory=list)
    primary_reviewer: str = ""
    needs_review: bool = False
    desc_issue: list[str] = field(default_factory=list)
    need_mail_issue: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PatchFile:
    name: str = ""
    status: str = ""
    num_chunks: int = 0
    no_base_file: bool = False
    property_changes: str = ""
    num_added: int = 0
    num_removed: int = 0
    id: str = ""
    is_binary: bool = False


@dataclass(slots=True)
class Patch:
    dv: int = 0
    cl: str = ""
    patch_set: str = ""
    files: list[PatchFile] = field(default_factory=list)
    created: datetime = EPOCH
    modified: datetime = EPOCH
    owner: str = ""
    num_comments: int = 0
    message: str = ""


@dataclass(slots=True)
class ReviewTodo:
    """Search cursor for a review poll axis that ran out of time."""

    dv: int = 0
    axis: str = ""
    cursor: str = ""
    modified_after: str = ""
    started: datetime = EPOCH


@dataclass(slots=True)
class UserPref:
    dv: int = 0
    muted: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Page:
    """One bounded result page from a remote adapter."""

    records: list[Any]
    next_cursor: str = ""
    truncated: bool = False


# ------------------ JSON codec ------------------


def _json_default(obj: Any) -> str:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(record: Any) -> str:
    payload = asdict(record) if is_dataclass(record) else record
    return json.dumps(payload, default=_json_default, sort_keys=True)


def parse_iso(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


@cache
def _hints(cls: type) -> dict[str, Any]:
    return get_type_hints(cls)


def _decode(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = get_origin(tp)
    if origin is list:
        (item,) = get_args(tp)
        return [_decode(item, v) for v in value]
    if origin in (typing.Union, types.UnionType):
        args = [a for a in get_args(tp) if a is not type(None)]
        return _decode(args[0], value)
    if tp is datetime:
        return parse_iso(value) if isinstance(value, str) else value
    if is_dataclass(tp):
        return from_dict(tp, value)
    return value


def from_dict(cls: type, data: dict[str, Any]) -> Any:
    """Build ``cls`` from decoded JSON; unknown keys are dropped."""
    hints = _hints(cls)
    kwargs = {f.name: _decode(hints[f.name], data[f.name]) for f in fields(cls) if f.name in data}
    return cls(**kwargs)


def loads(cls: type, text: str) -> Any:
    return from_dict(cls, json.loads(text))
