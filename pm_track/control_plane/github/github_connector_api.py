"""Issue tracker connector backed by the GitHub REST API (issues endpoints only)."""

from __future__ import annotations

from typing import Any

import requests

from pm_track.control_plane.github.github_connector import RetryableGitHubError
from pm_track.shared.errors import ExternalServiceError
from pm_track.shared.settings import SyncSettings


class GitHubAPIConnector:
    def __init__(
        self,
        read_token: str | None = None,
        write_token: str | None = None,
        base_url: str = "https://api.github.com",
        session: requests.Session | None = None,
        timeout_s: float = 15,
    ) -> None:
        self.read_token = read_token
        self.write_token = write_token
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(
        cls, settings: SyncSettings, session: requests.Session | None = None
    ) -> "GitHubAPIConnector":
        return cls(
            read_token=settings.read_token,
            write_token=settings.write_token,
            session=session,
        )

    def is_authenticated(self) -> bool:
        token = self.read_token or self.write_token
        if not token:
            return False
        try:
            user = self._request("GET", "/user", token=token)
        except (ExternalServiceError, RetryableGitHubError, requests.RequestException):
            return False
        return bool(isinstance(user, dict) and user.get("login"))

    def repo_info(self, repo: str) -> dict[str, Any] | None:
        try:
            payload = self._request("GET", f"/repos/{repo}", token=self.read_token)
        except ExternalServiceError as exc:
            if exc.metadata.get("status_code") == 404:
                return None
            raise
        if not isinstance(payload, dict):
            return None
        return {
            "full_name": str(payload.get("full_name", repo)),
            "default_branch": str(payload.get("default_branch", "")),
            "private": bool(payload.get("private", False)),
            "url": str(payload.get("html_url", "")),
        }

    def create_issue(
        self, repo: str, title: str, body: str = "", labels: list[str] | None = None
    ) -> dict[str, Any]:
        self._require_write_token(repo)
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = list(labels)
        response = self._request(
            "POST", f"/repos/{repo}/issues", token=self.write_token, json=payload
        )
        return _normalize_issue(response)

    def get_issue(self, repo: str, number: int) -> dict[str, Any] | None:
        try:
            response = self._request(
                "GET", f"/repos/{repo}/issues/{int(number)}", token=self.read_token
            )
        except ExternalServiceError as exc:
            if exc.metadata.get("status_code") == 404:
                return None
            raise
        return _normalize_issue(response)

    def update_issue(self, repo: str, number: int, fields: dict[str, Any]) -> dict[str, Any]:
        self._require_write_token(repo)
        payload = {key: value for key, value in fields.items() if key in _PATCHABLE}
        response = self._request(
            "PATCH",
            f"/repos/{repo}/issues/{int(number)}",
            token=self.write_token,
            json=payload,
        )
        return _normalize_issue(response)

    def list_issues(self, repo: str, **filters: str) -> list[dict[str, Any]]:
        params = {"state": "all", "per_page": "100"}
        params.update({key: value for key, value in filters.items() if value != ""})
        issues: list[dict[str, Any]] = []
        page = 1
        while True:
            rows, headers = self._request_with_headers(
                "GET",
                f"/repos/{repo}/issues",
                token=self.read_token,
                params={**params, "page": str(page)},
            )
            if not isinstance(rows, list) or not rows:
                break
            issues.extend(_normalize_issue(row) for row in rows if isinstance(row, dict))
            if 'rel="next"' not in str(headers.get("Link", "")):
                break
            page += 1
        return issues

    def _require_write_token(self, repo: str) -> None:
        if not self.write_token:
            raise PermissionError(f"Write denied for {repo}: missing_write_token")

    def _request_with_headers(
        self,
        method: str,
        path: str,
        token: str | None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> tuple[Any, dict[str, Any]]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        response = self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            headers=headers,
            json=json,
            params=params,
            timeout=self.timeout_s,
        )

        if response.status_code in {429, 403} and _looks_like_rate_limit(response):
            raise RetryableGitHubError(
                "GitHub API rate limited",
                reason_code="github_rate_limited",
                retry_after_s=_parse_retry_after((response.headers or {}).get("Retry-After")),
            )
        if response.status_code in {500, 502, 503, 504}:
            raise RetryableGitHubError(
                "GitHub API 5xx response",
                reason_code=f"github_{response.status_code}",
            )

        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ExternalServiceError(
                f"GitHub API {method} {path} failed with {response.status_code}",
                metadata={"status_code": response.status_code, "path": path},
                retryable=False,
            ) from exc
        if not response.content:
            return {}, dict(response.headers or {})
        return response.json(), dict(response.headers or {})

    def _request(
        self,
        method: str,
        path: str,
        token: str | None,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        payload, _headers = self._request_with_headers(
            method=method,
            path=path,
            token=token,
            json=json,
            params=params,
        )
        return payload


_PATCHABLE = {"title", "body", "state", "labels", "assignees"}


def _normalize_issue(row: Any) -> dict[str, Any]:
    if not isinstance(row, dict):
        return {}
    labels = [
        str(label.get("name", "")) if isinstance(label, dict) else str(label)
        for label in row.get("labels", []) or []
    ]
    return {
        "number": int(row.get("number") or 0),
        "title": str(row.get("title", "")),
        "body": str(row.get("body") or ""),
        "state": str(row.get("state", "open")),
        "url": str(row.get("html_url") or row.get("url") or ""),
        "labels": labels,
        "updated_at": str(row.get("updated_at") or ""),
        "is_pull_request": "pull_request" in row,
    }


def _looks_like_rate_limit(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    try:
        payload = response.json()
    except ValueError:
        return False
    message = str(payload.get("message", "")).lower() if isinstance(payload, dict) else ""
    return "rate limit" in message


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None
