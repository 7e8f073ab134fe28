"""Jira API client wrapper (REST v3 search pages, issue detail, comments)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

import pytz
import requests
from jira import JIRA, JIRAError

from .config import JIRA_DETAIL_FIELDS, JIRA_SUMMARY_FIELDS, TIMEZONE
from .errors import FetchError
from .mappers import parse_dt
from .models import Page

logger = logging.getLogger(__name__)

JQL_TIME_FORMAT = "%Y/%m/%d %H:%M"


def _floor_minute(ts: datetime) -> datetime:
    return ts.replace(second=0, microsecond=0)


def _ceil_minute(ts: datetime) -> datetime:
    floored = _floor_minute(ts)
    return floored if floored == ts else floored + timedelta(minutes=1)


class JiraAPI:
    """Thin wrapper around ``jira.JIRA``.

    Parameters
    ----------
    server, email, token
        Jira Cloud site and basic-auth credentials.
    project
        Project key the poller is restricted to.
    tz
        Time zone of the Jira account; JQL date literals are interpreted in it.
    """

    def __init__(self, server: str, email: str, token: str, project: str, tz: str = TIMEZONE):
        self.server = server.rstrip("/")
        self.project = project
        self.tz = pytz.timezone(tz)
        self.client = JIRA(
            basic_auth=(email, token), options={"server": self.server, "rest_api_version": "3"}
        )

    def window_jql(self, start: datetime, end: datetime) -> str:
        """JQL for issues updated in ``[start, end]``, widened to whole minutes."""
        lo = _floor_minute(start.astimezone(self.tz)).strftime(JQL_TIME_FORMAT)
        hi = _ceil_minute(end.astimezone(self.tz)).strftime(JQL_TIME_FORMAT)
        return (
            f'project = {self.project} AND updated >= "{lo}" AND updated <= "{hi}" '
            "ORDER BY updated ASC"
        )

    def search_page(self, jql: str, fields: list[str], max_results: int) -> tuple[list[dict[str, Any]], bool]:
        """Up to ``max_results`` raw issues for ``jql``; the flag is True when more exist."""
        session = getattr(self.client, "_session", None)
        if session is None:
            raise FetchError("JIRA session unavailable")
        url = f"{self.server}/rest/api/3/search/jql"
        params = {"jql": jql, "maxResults": max_results, "fields": ",".join(fields)}
        out: list[dict[str, Any]] = []
        token = None
        more = False
        while len(out) < max_results:
            qp = dict(params, maxResults=max_results - len(out))
            if token:
                qp["nextPageToken"] = token
            try:
                resp = session.get(url, params=qp)
            except requests.RequestException as exc:
                raise FetchError(f"Search request failed: {exc}") from exc
            if resp.status_code >= 400:
                raise FetchError(
                    f"Search failed {resp.status_code}: {resp.text[:200]}", status_code=resp.status_code
                )
            try:
                data = resp.json()
            except ValueError as exc:
                raise FetchError(f"Search returned non-JSON body: {resp.text[:200]}") from exc
            out.extend(data.get("issues", []))
            token = data.get("nextPageToken")
            more = bool(token) and data.get("isLast") is not True
            if not more:
                break
        return out, more

    def fetch_page(self, start: datetime, end: datetime, max_results: int) -> Page:
        """Issues modified in ``[start, end]``.

        ``truncated`` reflects the raw minute-widened page, so a saturated
        page is reported even when the exact window holds fewer records.
        """
        raw, more = self.search_page(self.window_jql(start, end), JIRA_SUMMARY_FIELDS, max_results)
        truncated = more or len(raw) >= max_results
        records = []
        for item in raw:
            updated = (item.get("fields") or {}).get("updated")
            ts = parse_dt(updated)
            if ts is None or start <= ts <= end:
                records.append(item)
        logger.debug("jira window %s..%s: %d raw, %d in window", start, end, len(raw), len(records))
        return Page(records=records, truncated=truncated)

    def fetch_issue_raw(self, issue_key: str) -> dict[str, Any]:
        try:
            issue = self.client.issue(issue_key, fields=",".join(JIRA_DETAIL_FIELDS))
        except JIRAError as exc:  # pragma: no cover - network error path
            raise FetchError(f"Failed to fetch issue {issue_key}: {exc}", status_code=exc.status_code) from exc
        if hasattr(issue, "raw"):
            return issue.raw
        if isinstance(issue, dict):
            return issue
        raise FetchError(f"Unexpected issue payload type for {issue_key}: {type(issue)!r}")

    def post_comment(self, issue_key: str, text: str) -> None:
        try:
            self.client.add_comment(issue_key, text)
        except JIRAError as exc:  # pragma: no cover - network error path
            raise FetchError(f"Failed to comment on {issue_key}: {exc}", status_code=exc.status_code) from exc

