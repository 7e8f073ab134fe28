"""Central configuration, constants, scheduling knobs, and the Settings object."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

# =============================================================================
# Connection Settings
# =============================================================================
JIRA_DEFAULT_SERVER = "https://go-dev.atlassian.net"
DEFAULT_PROJECT_KEY = "GO"
REVIEW_DEFAULT_SERVER = "https://codereview.appspot.com"
REVIEW_LOGIN_URL = "https://www.google.com/accounts/ClientLogin"
TIMEZONE = "America/Los_Angeles"
DEFAULT_DB_PATH = "devdash.db"

# =============================================================================
# Review Groups
# Mailing lists whose reviewer/cc membership defines which CLs we follow.
# =============================================================================
REVIEW_GROUPS: Sequence[str] = ("golang-dev", "golang-codereviews")
REVIEW_GROUP_DOMAIN = "googlegroups.com"
DEFAULT_REVIEWER = "golang-dev"

# Reviewer roster. Only messages from these addresses count as LGTM/NOT LGTM.
REVIEWERS: Sequence[str] = (
    "adg@golang.org",
    "adonovan@google.com",
    "agl@golang.org",
    "alex.brainman@gmail.com",
    "bradfitz@golang.org",
    "campoy@golang.org",
    "crawshaw@google.com",
    "dave@cheney.net",
    "dsymonds@golang.org",
    "dvyukov@google.com",
    "gri@golang.org",
    "iant@golang.org",
    "khr@golang.org",
    "mikioh.mikioh@gmail.com",
    "minux.ma@gmail.com",
    "nigeltao@golang.org",
    "r@golang.org",
    "rsc@golang.org",
)

# Corporate addresses are folded into the project domain when matching.
REVIEWER_ALT_DOMAINS: dict[str, str] = {"google.com": "golang.org"}

# =============================================================================
# Repository Attribution
# =============================================================================
MAIN_REPO = "go"
REPO_HOST_PREFIX = "code.google.com/p/"
GLOBAL_DIR_TAGS: frozenset[str] = frozenset({"all", "build"})

# =============================================================================
# Derivation Tuning
# =============================================================================
SUMMARY_MAX_LEN = 100
ACTIVE_MAX_AGE = timedelta(days=365)
MAX_FILES = 100
TEST_DIR_PENALTY = 10000  # keeps "test" from winning directory attribution
RELEASE_LABEL_PREFIX = "Release-"
DASHBOARD_RELEASE_LABEL = "Release-Go1.3"

# =============================================================================
# Polling
# =============================================================================
# Initial checkpoint when the datastore is empty.
ISSUE_EPOCH = datetime(2009, 1, 1, tzinfo=UTC)
REVIEW_EPOCH = "2009-01-01 00:00:00"
DEV_LOOKBACK = timedelta(hours=24)

ISSUE_MAX_RESULTS = 500
REVIEW_ITEMS_PER_PAGE = 100
MIN_WINDOW = timedelta(seconds=2)
WIDE_WINDOW = timedelta(hours=1)
CHECKPOINT_MARGIN = timedelta(seconds=1)
EMPTY_WINDOW_MARGIN = timedelta(minutes=1)

# A long poll stops after this long and asks to be re-run.
WORK_BUDGET = timedelta(minutes=5)

# Detail pass: per-issue comment fetches are I/O bound, run them on threads.
DETAIL_MAX_WORKERS = 8
DETAIL_MIN_PARALLEL = 4

# Canonical field list for the cheap summary page.
JIRA_SUMMARY_FIELDS = [
    "summary",
    "created",
    "updated",
    "status",
    "resolution",
    "resolutiondate",
    "assignee",
    "reporter",
    "labels",
    "watches",
    "votes",
]
JIRA_DETAIL_FIELDS = JIRA_SUMMARY_FIELDS + ["comment"]

# =============================================================================
# Scheduler
# =============================================================================
LEASE_TTL = timedelta(minutes=15)
TASK_NAME_RETENTION = timedelta(days=3650)
CRON_NAME_RETENTION = timedelta(days=1)
SCAN_CHUNK = 100000
UPDATE_CHUNK = 1000
CRON_CLOCK_KEY = "app.cron.time"


@dataclass(slots=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    jira_server: str = JIRA_DEFAULT_SERVER
    jira_email: str | None = None
    jira_token: str | None = None
    project_key: str = DEFAULT_PROJECT_KEY
    review_server: str = REVIEW_DEFAULT_SERVER
    review_login_url: str = REVIEW_LOGIN_URL
    review_groups: list[str] = field(default_factory=lambda: list(REVIEW_GROUPS))
    reviewers: list[str] = field(default_factory=lambda: list(REVIEWERS))
    dashboard_label: str = DASHBOARD_RELEASE_LABEL
    timezone: str = TIMEZONE
    dev_mode: bool = False
    issue_max_results: int = ISSUE_MAX_RESULTS
    review_page_size: int = REVIEW_ITEMS_PER_PAGE

    def review_url(self, cl: str) -> str:
        return f"{self.review_server.rstrip('/')}/{cl}"

