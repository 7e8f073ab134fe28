"""Code-review (Rietveld) JSON client: search pages, CL detail, patch sets and comments."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

import requests

from .config import REVIEW_DEFAULT_SERVER, REVIEW_GROUP_DOMAIN, REVIEW_ITEMS_PER_PAGE, REVIEW_LOGIN_URL
from .errors import FetchError
from .models import Page

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
LOGIN_MARKER = "http://example.com/marker"
TIMEOUT = 60


class ReviewAPI:
    def __init__(
        self,
        server: str = REVIEW_DEFAULT_SERVER,
        login_url: str = REVIEW_LOGIN_URL,
        session: requests.Session | None = None,
    ):
        self.server = server.rstrip("/")
        self.login_url = login_url
        self.session = session or requests.Session()
        self._credentials: tuple[str, str] | None = None

    # ------------------ reads ------------------

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.server}{path}"
        try:
            resp = self.session.get(url, params=params, timeout=TIMEOUT)
        except requests.RequestException as exc:
            raise FetchError(f"fetch <{url}>: {exc}") from exc
        if resp.status_code != 200:
            raise FetchError(f"fetch <{url}>: http {resp.status_code}", status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise FetchError(f"decoding JSON from <{url}>: {exc}") from exc

    def search(
        self,
        axis: str,
        group: str,
        modified_after: str,
        cursor: str = "",
        limit: int = REVIEW_ITEMS_PER_PAGE,
    ) -> Page:
        """One page of CLs where ``group`` is on the ``axis`` list (``reviewer`` or ``cc``)."""
        params = {
            "closed": "1",  # 1 means "either"
            axis: f"{group}@{REVIEW_GROUP_DOMAIN}",
            "private": "1",
            "modified_after": modified_after,
            "order": "modified",
            "format": "json",
            "keys_only": "False",
            "with_messages": "False",
            "cursor": cursor,
            "limit": str(limit),
        }
        data = self._get_json("/search", params)
        results = data.get("results") or []
        return Page(records=results, next_cursor=data.get("cursor") or "", truncated=len(results) >= limit)

    def issue(self, cl: str, messages: bool = True) -> dict[str, Any]:
        return self._get_json(f"/api/{cl}", {"messages": "true"} if messages else None)

    def patch(self, cl: str, patch_set: str) -> dict[str, Any]:
        return self._get_json(f"/api/{cl}/{patch_set}")

    # ------------------ writes ------------------

    def login(self, user: str, password: str) -> None:
        """Exchange credentials for session cookies on the review server."""
        self._credentials = (user, password)
        form = {
            "Email": user,
            "Passwd": password,
            "source": "devdash",
            "service": "ah",
            "accountType": "GOOGLE",
        }
        logger.info("Authenticating %s with %s", user, self.login_url)
        try:
            resp = self.session.post(self.login_url, data=form, allow_redirects=False, timeout=TIMEOUT)
        except requests.RequestException as exc:
            raise FetchError(f"login: {exc}") from exc
        args = dict(line.split("=", 1) for line in resp.text.splitlines() if "=" in line)
        if "Auth" not in args:
            raise FetchError(f"login: {args.get('Error', resp.status_code)} {args.get('Info', '')}".strip())

        query = urlencode({"continue": LOGIN_MARKER, "auth": args["Auth"]})
        try:
            resp = self.session.get(f"{self.server}/_ah/login?{query}", allow_redirects=False, timeout=TIMEOUT)
        except requests.RequestException as exc:
            raise FetchError(f"authorize: {exc}") from exc
        if resp.status_code not in (301, 302) or resp.headers.get("location") != LOGIN_MARKER:
            raise FetchError(f"authorize: unexpected response {resp.status_code}", status_code=resp.status_code)
        logger.info("Login on %s successful", self.server)

    @staticmethod
    def _needs_login(resp: requests.Response) -> bool:
        if resp.status_code == 401:
            return True
        return resp.status_code == 302 and "Login" in resp.headers.get("location", "")

    def add_comment(
        self,
        cl: str,
        message: str,
        reviewers: list[str],
        cc: list[str],
        send_mail: bool = True,
    ) -> None:
        """Publish ``message`` on ``cl`` and replace its reviewer/CC lists."""
        form = {
            "message": message,
            "reviewers": ", ".join(reviewers),
            "cc": ", ".join(cc),
            "message_only": "0",
            "no_redirect": "1",
        }
        if send_mail:
            form["send_mail"] = "1"
        url = f"{self.server}/{cl}/publish"
        last = ""
        for attempt in range(MAX_ATTEMPTS):
            try:
                resp = self.session.post(url, data=form, allow_redirects=False, timeout=TIMEOUT)
            except requests.RequestException as exc:
                last = str(exc)
                logger.warning("publish %s failed: %s", cl, exc)
                continue
            if self._needs_login(resp):
                last = f"server returned {resp.status_code}"
                if attempt + 1 == MAX_ATTEMPTS or self._credentials is None:
                    break
                logger.info("publish %s: %s, retrying after login", cl, last)
                self.login(*self._credentials)
                continue
            if resp.status_code != 200:
                raise FetchError(f"publish {cl}: http {resp.status_code}", status_code=resp.status_code)
            return
        raise FetchError(f"publish {cl}: {last}")
