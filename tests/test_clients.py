from datetime import UTC, datetime, timedelta

import pytest
import pytz

from devdash.core.errors import FetchError
from devdash.core.jira_client import JiraAPI
from devdash.core.review_client import LOGIN_MARKER, ReviewAPI

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class DummyJira(JiraAPI):
    def __init__(self, raw, tz="UTC"):
        self.server = "https://example.atlassian.net"
        self.project = "GO"
        self.tz = pytz.timezone(tz)
        self.raw = raw
        self.queries = []

    def search_page(self, jql, fields, max_results):
        self.queries.append(jql)
        return self.raw[:max_results], len(self.raw) > max_results


def _hit(key, updated):
    return {"key": key, "fields": {"updated": updated.isoformat()}}


def test_window_jql_widens_to_minutes():
    api = DummyJira([])
    jql = api.window_jql(T0 + timedelta(seconds=30), T0 + timedelta(minutes=5, seconds=10))
    assert jql == (
        'project = GO AND updated >= "2024/03/01 12:00" AND updated <= "2024/03/01 12:06" ORDER BY updated ASC'
    )


def test_window_jql_uses_account_time_zone():
    api = DummyJira([], tz="America/Los_Angeles")
    jql = api.window_jql(T0, T0 + timedelta(minutes=1))
    assert '"2024/03/01 04:00"' in jql


def test_fetch_page_filters_to_exact_window():
    raw = [
        _hit("GO-1", T0 + timedelta(seconds=5)),
        _hit("GO-2", T0 + timedelta(seconds=40)),
        _hit("GO-3", T0 + timedelta(seconds=70)),
    ]
    api = DummyJira(raw)
    page = api.fetch_page(T0 + timedelta(seconds=10), T0 + timedelta(seconds=60), 10)
    assert [r["key"] for r in page.records] == ["GO-2"]
    assert page.truncated is False


def test_fetch_page_reports_saturation_from_raw_page():
    raw = [_hit(f"GO-{i}", T0 + timedelta(seconds=i)) for i in range(3)]
    page = DummyJira(raw).fetch_page(T0 + timedelta(seconds=2), T0 + timedelta(minutes=1), 3)
    assert len(page.records) == 1
    assert page.truncated is True


class RecordingJira:
    def __init__(self):
        self.calls = []

    def issue(self, key, **kwargs):
        self.calls.append((key, kwargs))
        return {"key": key, "fields": {}}


def test_issue_detail_requests_comment_field():
    api = DummyJira([])
    api.client = RecordingJira()
    assert api.fetch_issue_raw("GO-7") == {"key": "GO-7", "fields": {}}
    key, kwargs = api.client.calls[0]
    assert key == "GO-7"
    assert "comment" in kwargs["fields"].split(",")
    assert "expand" not in kwargs


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON")
        return self._payload


class FakeSession:
    """Replays canned responses and records each request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.responses.pop(0)

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self.responses.pop(0)


def test_search_builds_query_and_page():
    session = FakeSession(FakeResponse(payload={"results": [{"issue": 1}, {"issue": 2}], "cursor": "abc"}))
    api = ReviewAPI("https://review.example.com/", session=session)
    page = api.search("cc", "golang-dev", "2024-03-01 11:00:00", limit=2)
    method, url, kwargs = session.calls[0]
    assert url == "https://review.example.com/search"
    assert kwargs["params"]["cc"] == "golang-dev@googlegroups.com"
    assert kwargs["params"]["modified_after"] == "2024-03-01 11:00:00"
    assert kwargs["params"]["limit"] == "2"
    assert page.next_cursor == "abc"
    assert page.truncated is True


def test_issue_fetch_errors_carry_status():
    api = ReviewAPI("https://review.example.com", session=FakeSession(FakeResponse(status_code=404)))
    with pytest.raises(FetchError) as err:
        api.issue("1234")
    assert err.value.status_code == 404

    api = ReviewAPI("https://review.example.com", session=FakeSession(FakeResponse(text="<html>")))
    with pytest.raises(FetchError):
        api.patch("1234", "1")


def _login_responses():
    return (
        FakeResponse(text="SID=x\nLSID=y\nAuth=token123\n"),
        FakeResponse(status_code=302, headers={"location": LOGIN_MARKER}),
    )


def test_login_exchanges_token_for_cookie():
    session = FakeSession(*_login_responses())
    api = ReviewAPI("https://review.example.com", login_url="https://login.example.com", session=session)
    api.login("bot@golang.org", "pw")
    assert session.calls[0][1] == "https://login.example.com"
    assert session.calls[0][2]["data"]["Email"] == "bot@golang.org"
    assert "auth=token123" in session.calls[1][1]


def test_login_rejected():
    session = FakeSession(FakeResponse(status_code=403, text="Error=BadAuthentication\n"))
    api = ReviewAPI("https://review.example.com", session=session)
    with pytest.raises(FetchError, match="BadAuthentication"):
        api.login("bot@golang.org", "wrong")


def test_add_comment_logs_in_again_when_session_expired():
    session = FakeSession(
        *_login_responses(),
        FakeResponse(status_code=302, headers={"location": "https://www.google.com/accounts/ServiceLogin"}),
        *_login_responses(),
        FakeResponse(status_code=200, text="OK"),
    )
    api = ReviewAPI("https://review.example.com", session=session)
    api.login("bot@golang.org", "pw")
    api.add_comment("1234", "R=rsc", ["rsc"], ["golang-dev@googlegroups.com"])
    posts = [c for c in session.calls if c[1].endswith("/1234/publish")]
    assert len(posts) == 2
    assert posts[-1][2]["data"]["reviewers"] == "rsc"
    assert posts[-1][2]["data"]["send_mail"] == "1"


def test_add_comment_server_error():
    api = ReviewAPI("https://review.example.com", session=FakeSession(FakeResponse(status_code=500)))
    with pytest.raises(FetchError) as err:
        api.add_comment("1234", "hi", [], [])
    assert err.value.status_code == 500
