"""Source-control gateway backed by the GitHub REST API."""

from __future__ import annotations

import base64
import http.client
import json
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from ..errors import ConflictError, UpstreamCallFailed
from ..logging import get_logger
from ..models import CheckRun, CommitInfo, FileContent, TreeEntry


@dataclass
class HTTPResponse:
    status: int
    body: bytes


Transport = Callable[..., HTTPResponse]


class GitHubGateway:
    """Reads and writes repository content through the hosting API."""

    DEFAULT_API_URL = "https://api.github.com"
    USER_AGENT = "evolver"

    def __init__(
        self,
        token: str | None,
        *,
        api_url: str = DEFAULT_API_URL,
        request_timeout: float = 30.0,
        transport: Transport | None = None,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout
        self._transport = transport or self._default_transport
        self.logger = get_logger("github")

    def list_tree(self, owner: str, repo: str, branch: str) -> List[TreeEntry]:
        """Return every entry of the branch tree (recursive listing)."""
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{quote(branch, safe='')}",
            query={"recursive": "1"},
        )
        entries: List[TreeEntry] = []
        tree = data.get("tree") if isinstance(data, dict) else None
        for item in tree or []:
            if not isinstance(item, dict) or not isinstance(item.get("path"), str):
                continue
            entries.append(
                TreeEntry(
                    path=item["path"],
                    type=str(item.get("type") or ""),
                    size=int(item.get("size") or 0),
                )
            )
        return entries

    def get_file(self, owner: str, repo: str, path: str, ref: str) -> FileContent:
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            query={"ref": ref},
        )
        if not isinstance(data, dict) or not isinstance(data.get("sha"), str):
            raise UpstreamCallFailed(f"GitHub returned no file content for {path}")
        return FileContent(
            path=str(data.get("path") or path),
            sha=data["sha"],
            content_base64=str(data.get("content") or ""),
        )

    def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        *,
        expected_sha: str,
        branch: str,
        message: str,
    ) -> str:
        """Commit new file content; returns the new commit sha.

        The write is conditional on ``expected_sha`` still being the current
        blob sha. A mismatch raises :class:`ConflictError`.
        """
        payload = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "sha": expected_sha,
            "branch": branch,
        }
        data = self._request("PUT", f"/repos/{owner}/{repo}/contents/{quote(path)}", payload=payload)
        commit = data.get("commit") if isinstance(data, dict) else None
        sha = commit.get("sha") if isinstance(commit, dict) else None
        if not isinstance(sha, str) or not sha:
            raise UpstreamCallFailed(f"GitHub did not return a commit for {path}")
        return sha

    def list_commits(self, owner: str, repo: str, branch: str) -> List[CommitInfo]:
        data = self._request("GET", f"/repos/{owner}/{repo}/commits", query={"sha": branch})
        commits: List[CommitInfo] = []
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, dict) or not isinstance(item.get("sha"), str):
                continue
            commit = item.get("commit") if isinstance(item.get("commit"), dict) else {}
            author = commit.get("author") if isinstance(commit.get("author"), dict) else {}
            commits.append(
                CommitInfo(
                    sha=item["sha"],
                    author_name=str(author.get("name") or ""),
                    message=str(commit.get("message") or ""),
                )
            )
        return commits

    def get_check_runs(self, owner: str, repo: str, sha: str) -> List[CheckRun]:
        data = self._request("GET", f"/repos/{owner}/{repo}/commits/{sha}/check-runs")
        runs: List[CheckRun] = []
        raw_runs = data.get("check_runs") if isinstance(data, dict) else None
        for item in raw_runs or []:
            if not isinstance(item, dict):
                continue
            conclusion = item.get("conclusion")
            runs.append(
                CheckRun(
                    name=str(item.get("name") or ""),
                    status=str(item.get("status") or ""),
                    conclusion=conclusion if isinstance(conclusion, str) else None,
                )
            )
        return runs

    # ------------------------------------------------------------------
    # Helpers

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: Mapping[str, str] | None = None,
        payload: Dict[str, object] | None = None,
    ) -> object:
        if not self.token:
            raise UpstreamCallFailed("GitHub token not configured")
        url = f"{self.api_url}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "Authorization": f"token {self.token}",
            "User-Agent": self.USER_AGENT,
        }
        body: Optional[bytes] = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            body = json.dumps(payload).encode("utf-8")

        self.logger.debug("GitHub %s %s", method, path)
        response = self._transport(method, url, headers=headers, body=body, timeout=self.request_timeout)

        data: object = None
        if response.body:
            try:
                data = json.loads(response.body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                if response.status < 400:
                    raise UpstreamCallFailed(f"GitHub returned invalid JSON for {path}") from exc

        if response.status == 409:
            raise ConflictError(
                f"GitHub rejected {method} {path}: {_message(data) or 'conflict'}", status=409
            )
        if response.status >= 400:
            raise UpstreamCallFailed(
                f"GitHub API error {response.status}: {_message(data) or 'request failed'}",
                status=response.status,
            )
        return data

    @staticmethod
    def _default_transport(
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        body: Optional[bytes] = None,
        timeout: float = 30.0,
    ) -> HTTPResponse:
        request = Request(url, data=body, headers=headers, method=method)
        try:
            with urlopen(request, timeout=timeout) as response:  # type: ignore[arg-type]
                return HTTPResponse(status=response.status, body=response.read())
        except HTTPError as exc:
            detail = exc.read() if hasattr(exc, "read") else b""
            return HTTPResponse(status=exc.code, body=detail or b"")
        except URLError as exc:
            raise UpstreamCallFailed(f"GitHub request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise UpstreamCallFailed("GitHub request timed out") from exc
        except (http.client.HTTPException, OSError) as exc:
            raise UpstreamCallFailed(f"GitHub connection failed: {exc}") from exc


def _message(data: object) -> str:
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return ""


__all__ = ["GitHubGateway", "HTTPResponse"]
