"""Test configuration ensuring local package import when editable install not active.

If users invoke `pytest` outside the project's virtualenv, we still add the project
root to sys.path so `import devdash` works. Also provides an in-memory app
context wired to fake Jira and review clients and a controllable clock.
"""

from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from devdash.app import open_app  # noqa: E402
from devdash.core.config import Settings  # noqa: E402
from devdash.core.errors import FetchError  # noqa: E402
from devdash.core.jira_client import JiraAPI  # noqa: E402
from devdash.core.models import Page  # noqa: E402
from devdash.core.review_client import ReviewAPI  # noqa: E402

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeJira(JiraAPI):
    """Serves issues from an in-memory dict keyed by issue key."""

    def __init__(self):
        self.server = "https://example.atlassian.net"
        self.project = "GO"
        self.issues: dict[str, dict] = {}
        self.pages: list[Page] = []  # scripted pages, consumed before ``issues``
        self.windows: list[tuple[datetime, datetime]] = []
        self.comments: list[tuple[str, str]] = []
        self.fail_detail: dict[str, int] = {}

    def fetch_page(self, start, end, max_results):
        self.windows.append((start, end))
        if self.pages:
            return self.pages.pop(0)
        hits = []
        for raw in sorted(self.issues.values(), key=lambda r: r["fields"]["updated"]):
            updated = datetime.fromisoformat(raw["fields"]["updated"])
            if start <= updated <= end:
                hits.append(raw)
        return Page(records=hits[:max_results], truncated=len(hits) >= max_results)

    def fetch_issue_raw(self, issue_key):
        if issue_key in self.fail_detail:
            raise FetchError(f"detail {issue_key}", status_code=self.fail_detail[issue_key])
        return self.issues[issue_key]

    def post_comment(self, issue_key, text):
        self.comments.append((issue_key, text))


class FakeReview(ReviewAPI):
    """Serves CLs from in-memory dicts and records published comments."""

    def __init__(self):
        self.server = "https://review.example.com"
        self.cls: dict[str, dict] = {}
        self.patches: dict[tuple[str, str], dict] = {}
        self.pages: dict[str, list[Page]] = {}
        self.searches: list[tuple[str, str, str, str]] = []
        self.published: list[tuple[str, str, list[str], list[str]]] = []
        self.logins: list[str] = []
        self.missing: set[str] = set()

    def search(self, axis, group, modified_after, cursor="", limit=100):
        self.searches.append((axis, group, modified_after, cursor))
        queue = self.pages.get(f"{axis}.{group}")
        if queue:
            return queue.pop(0)
        return Page(records=[])

    def issue(self, cl, messages=True):
        if cl in self.missing:
            raise FetchError(f"fetch <{cl}>: http 404", status_code=404)
        raw = dict(self.cls[cl])
        if not messages:
            raw.pop("messages", None)
        return raw

    def patch(self, cl, patch_set):
        return self.patches[(cl, patch_set)]

    def login(self, user, password):
        self.logins.append(user)

    def add_comment(self, cl, message, reviewers, cc, send_mail=True):
        self.published.append((cl, message, reviewers, cc))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        db_path=":memory:",
        project_key="GO",
        review_server="https://review.example.com",
        reviewers=["alice@golang.org", "bob@golang.org", "gri@golang.org", "rsc@golang.org"],
        issue_max_results=5,
        review_page_size=3,
    )


@pytest.fixture
def jira():
    return FakeJira()


@pytest.fixture
def review():
    return FakeReview()


@pytest.fixture
def ctx(settings, jira, review, clock):
    app = open_app(settings, jira=jira, review=review, clock=clock)
    yield app
    app.store.db.close()
