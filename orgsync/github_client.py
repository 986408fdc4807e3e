"""GitHub REST listing client: one call per page, Link-header page numbers."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlparse

import requests
from requests.structures import CaseInsensitiveDict

from orgsync.config import GitHubConfig
from orgsync.pager import Page, PageRequest

logger = logging.getLogger("orgsync.github")


class GitHubAPIError(Exception):
    def __init__(self, status_code: int, message: str, url: str, headers: Optional[Mapping[str, Any]] = None) -> None:
        self.status_code = status_code
        self.message = message
        self.url = url
        self.headers = CaseInsensitiveDict(headers or {})
        super().__init__(f"GitHub error {status_code}: {message} ({url})")


def next_page_number(response: requests.Response) -> int:
    """Page number from the ``rel="next"`` Link, or 0 on the last page."""
    url = (response.links.get("next") or {}).get("url", "")
    if not url:
        return 0
    values = parse_qs(urlparse(url).query).get("page")
    if not values:
        return 0
    try:
        return int(values[0])
    except ValueError:
        return 0


class GitHubClient:
    def __init__(self, config: GitHubConfig, session: Optional[requests.Session] = None) -> None:
        self._base = config.api_base_url.rstrip("/")
        self._timeout = config.request_timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"token {config.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })

    def close(self) -> None:
        self._session.close()

    def _get(self, path: str, params: Optional[dict] = None) -> requests.Response:
        url = f"{self._base}{path}"
        resp = self._session.get(url, params=params, timeout=self._timeout)
        if not resp.ok:
            try:
                body = resp.json()
                message = body.get("message", "") if isinstance(body, dict) else ""
            except ValueError:
                message = (resp.text or "")[:400]
            remaining = resp.headers.get("X-RateLimit-Remaining")
            if resp.status_code in (403, 429) and remaining == "0":
                logger.warning(
                    "GitHub rate limit exhausted, resets at %s",
                    resp.headers.get("X-RateLimit-Reset", "?"),
                )
            raise GitHubAPIError(resp.status_code, message or "request failed", url, resp.headers)
        return resp

    def _list(self, path: str, request: PageRequest, params: Optional[dict] = None) -> Page:
        query = dict(params or {})
        query["page"] = request.page
        query["per_page"] = request.per_page
        resp = self._get(path, query)
        data = resp.json()
        items = data if isinstance(data, list) else [data]
        return Page(items=items, next_page=next_page_number(resp), headers=CaseInsensitiveDict(resp.headers))

    # ------------------------------------------------------------------
    # Listings (org is the scope for every call)
    # ------------------------------------------------------------------

    def list_org_members(self, org: str, request: PageRequest) -> Page:
        return self._list(f"/orgs/{org}/members", request)

    def list_org_teams(self, org: str, request: PageRequest) -> Page:
        return self._list(f"/orgs/{org}/teams", request)

    def list_org_repos(self, org: str, request: PageRequest) -> Page:
        return self._list(f"/orgs/{org}/repos", request)

    def list_outside_collaborators(self, org: str, request: PageRequest) -> Page:
        return self._list(f"/orgs/{org}/outside_collaborators", request)

    def list_repo_collaborators(self, org: str, repo: str, request: PageRequest) -> Page:
        return self._list(f"/repos/{org}/{repo}/collaborators", request, {"affiliation": "direct"})

    def list_repo_teams(self, org: str, repo: str, request: PageRequest) -> Page:
        return self._list(f"/repos/{org}/{repo}/teams", request)

    def list_team_members(self, org: str, team_slug: str, request: PageRequest) -> Page:
        return self._list(f"/orgs/{org}/teams/{team_slug}/members", request)

    def get_user(self, login: str) -> dict:
        return self._get(f"/users/{login}").json()

    def get_authenticated_user(self) -> tuple[dict, CaseInsensitiveDict]:
        resp = self._get("/user")
        return resp.json(), CaseInsensitiveDict(resp.headers)
