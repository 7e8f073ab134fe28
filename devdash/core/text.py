"""Small text helpers shared by derivation and dashboard code."""

from __future__ import annotations

import re

from .config import SUMMARY_MAX_LEN

ISSUE_REF_RE = re.compile(r"\bissue ([0-9]+)\b", re.I)


def summary_line(text: str, limit: int = SUMMARY_MAX_LEN) -> str:
    """First line of the trimmed text, capped at ``limit`` characters."""
    line = text.strip().split("\n", 1)[0]
    return line[:limit]


def desc_dir(desc: str) -> str:
    """Directory named by a ``dir: text`` or ``dir, other: text`` prefix, or ``""``."""
    desc = desc.strip()
    head, sep, _ = desc.partition(":")
    if not sep:
        return ""
    head = head.split(",", 1)[0].strip()
    if " " in head:
        return ""
    return head


def short_email(addr: str) -> str:
    return addr.split("@", 1)[0]


def issue_refs(text: str, project: str) -> list[str]:
    """Tracker keys referenced as ``issue 123`` or ``PROJECT-123``, sorted and unique."""
    keys = {f"{project}-{n}" for n in ISSUE_REF_RE.findall(text)}
    keys.update(re.findall(rf"\b{re.escape(project)}-[0-9]+\b", text))
    return sorted(keys)
