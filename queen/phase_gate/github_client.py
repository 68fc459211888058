import errno
import json
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

from queen.phase_gate.logger import log_event

DEFAULT_API_BASE = "https://api.github.com"
PER_PAGE = 100
MAX_PAGES = 50
API_VERSION = "2022-11-28"

_ERRNO_CODES = {
    errno.ECONNRESET: "ECONNRESET",
    errno.ETIMEDOUT: "ETIMEDOUT",
    errno.ECONNREFUSED: "ECONNREFUSED",
    errno.EPIPE: "EPIPE",
}


class GitHubApiError(Exception):
    def __init__(self, message, status=None, headers=None, code=None):
        super().__init__(message)
        self.status = status
        self.headers = dict(headers or {})
        self.code = code


def _normalize_api_base(api_base):
    base = (api_base or "").strip().rstrip("/")
    if not base:
        raise GitHubApiError("Missing api_base")
    return base


def _network_error_code(exc):
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return "ETIMEDOUT"
    if isinstance(exc, socket.gaierror):
        if exc.errno == getattr(socket, "EAI_AGAIN", None):
            return "EAI_AGAIN"
        return "ENOTFOUND"
    reason = getattr(exc, "reason", None)
    if reason is not None and reason is not exc:
        return _network_error_code(reason)
    if isinstance(exc, OSError) and exc.errno in _ERRNO_CODES:
        return _ERRNO_CODES[exc.errno]
    return None


def _api_json_request(method, url, payload=None, headers=None, timeout=10):
    """Returns (status, parsed, raw, response_headers); never raises on HTTP errors."""
    req_headers = {"Accept": "application/vnd.github+json"}
    if headers:
        req_headers.update(headers)
    data = None
    if payload is not None:
        req_headers["Content-Type"] = "application/json"
        data = json.dumps(payload).encode("utf-8")

    req = urllib.request.Request(url, data=data, headers=req_headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            raw = response.read().decode()
            parsed = json.loads(raw) if raw else None
            return response.status, parsed, raw, _lower_headers(response.headers)
    except urllib.error.HTTPError as e:
        raw = e.read().decode() if e.fp else ""
        parsed = None
        if raw:
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = None
        return e.code, parsed, raw, _lower_headers(e.headers)


def _lower_headers(headers):
    if not headers:
        return {}
    return {str(key).lower(): str(value) for key, value in headers.items()}


def _next_link(link_header):
    for part in (link_header or "").split(","):
        match = re.search(r'<([^>]+)>\s*;\s*rel="next"', part)
        if match:
            return match.group(1)
    return None


def auth_headers(token, scheme="token"):
    headers = {"X-GitHub-Api-Version": API_VERSION}
    if token:
        headers["Authorization"] = f"{scheme} {token}"
    return headers


class GitHubClient:
    """Thin REST client; every non-2xx response raises GitHubApiError."""

    def __init__(self, api_base=DEFAULT_API_BASE, headers=None, timeout=10):
        self.api_base = _normalize_api_base(api_base)
        self.headers = dict(headers or {})
        self.timeout = timeout

    def _url(self, path, params=None):
        url = path if path.startswith("http") else f"{self.api_base}{path}"
        if params:
            url += ("&" if "?" in url else "?") + urllib.parse.urlencode(params)
        return url

    def request(self, method, path, payload=None, params=None, ok=(200, 201, 204)):
        url = self._url(path, params)
        try:
            status, parsed, raw, headers = _api_json_request(
                method, url, payload=payload, headers=self.headers, timeout=self.timeout
            )
        except (urllib.error.URLError, OSError) as exc:
            raise GitHubApiError(
                f"GitHub API network failure method={method} url={url} error={exc}",
                code=_network_error_code(exc),
            ) from exc
        if status not in ok:
            message = parsed.get("message") if isinstance(parsed, dict) else raw
            raise GitHubApiError(
                f"GitHub API failure method={method} url={url} status={status} message={message}",
                status=status,
                headers=headers,
            )
        return parsed, headers

    def paginate(self, path, params=None, item_key=None):
        query = dict(params or {})
        query.setdefault("per_page", PER_PAGE)
        url = self._url(path, query)
        pages = 0
        while url and pages < MAX_PAGES:
            data, headers = self.request("GET", url)
            items = data.get(item_key, []) if item_key and isinstance(data, dict) else data
            if not isinstance(items, list):
                raise GitHubApiError(f"GitHub API failure url={url} expected list body")
            for item in items:
                yield item
            url = _next_link(headers.get("link"))
            pages += 1
        if url:
            log_event(
                "github_client",
                f"pagination stopped at {MAX_PAGES} pages for {path}, remaining results were not read",
                level="warning",
            )

    # issues

    def list_issues(self, owner, repo, label, state="open"):
        return self.paginate(
            f"/repos/{owner}/{repo}/issues", {"state": state, "labels": label}
        )

    def get_issue(self, owner, repo, number):
        data, _ = self.request("GET", f"/repos/{owner}/{repo}/issues/{number}")
        return data

    def list_issue_comments(self, owner, repo, number):
        return self.paginate(f"/repos/{owner}/{repo}/issues/{number}/comments")

    def list_timeline(self, owner, repo, number):
        return self.paginate(f"/repos/{owner}/{repo}/issues/{number}/timeline")

    def list_issue_reactions(self, owner, repo, number):
        return self.paginate(f"/repos/{owner}/{repo}/issues/{number}/reactions")

    def list_comment_reactions(self, owner, repo, comment_id):
        return self.paginate(f"/repos/{owner}/{repo}/issues/comments/{comment_id}/reactions")

    def add_labels(self, owner, repo, number, labels):
        self.request(
            "POST", f"/repos/{owner}/{repo}/issues/{number}/labels", payload={"labels": list(labels)}
        )

    def remove_label(self, owner, repo, number, label):
        name = urllib.parse.quote(label, safe="")
        self.request("DELETE", f"/repos/{owner}/{repo}/issues/{number}/labels/{name}")

    def create_comment(self, owner, repo, number, body):
        data, _ = self.request(
            "POST", f"/repos/{owner}/{repo}/issues/{number}/comments", payload={"body": body}
        )
        return data

    def update_issue(self, owner, repo, number, **fields):
        self.request("PATCH", f"/repos/{owner}/{repo}/issues/{number}", payload=fields)

    def lock_issue(self, owner, repo, number, reason="resolved"):
        self.request(
            "PUT", f"/repos/{owner}/{repo}/issues/{number}/lock", payload={"lock_reason": reason}
        )

    def unlock_issue(self, owner, repo, number):
        self.request("DELETE", f"/repos/{owner}/{repo}/issues/{number}/lock")

    # repositories

    def get_repository_file(self, owner, repo, path):
        data, _ = self.request("GET", f"/repos/{owner}/{repo}/contents/{path}")
        return data

    def list_installation_repositories(self):
        return self.paginate("/installation/repositories", item_key="repositories")
