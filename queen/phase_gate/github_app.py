"""GitHub App authentication: app JWTs, installation discovery and installation tokens."""

import time

import jwt

from queen.phase_gate.github_client import GitHubApiError, GitHubClient, auth_headers
from queen.phase_gate.logger import log_event

# GitHub caps app JWT lifetime at ten minutes.
JWT_BACKDATE_SECONDS = 60
JWT_LIFETIME_SECONDS = 540


def normalize_private_key(value):
    """PEM keys passed through env vars often carry literal \\n sequences."""
    key = (value or "").strip()
    if "\\n" in key and "\n" not in key:
        key = key.replace("\\n", "\n")
    return key


def app_jwt(app_id, private_key, now=time.time):
    issued = int(now())
    payload = {
        "iat": issued - JWT_BACKDATE_SECONDS,
        "exp": issued + JWT_LIFETIME_SECONDS,
        "iss": str(app_id),
    }
    return jwt.encode(payload, private_key, algorithm="RS256")


class GitHubApp:
    def __init__(self, api_base, app_id, private_key, client_factory=GitHubClient, now=time.time):
        self.api_base = api_base
        self.app_id = app_id
        self.private_key = normalize_private_key(private_key)
        self.client_factory = client_factory
        self.now = now

    def _client(self):
        # One JWT per call.
        token = app_jwt(self.app_id, self.private_key, now=self.now)
        return self.client_factory(self.api_base, headers=auth_headers(token, scheme="Bearer"))

    def bot_login(self):
        data, _ = self._client().request("GET", "/app")
        slug = data.get("slug") if isinstance(data, dict) else None
        if not slug:
            raise GitHubApiError("GitHub App response has no slug")
        return f"{slug}[bot]"

    def installations(self):
        found = []
        for entry in self._client().paginate("/app/installations"):
            if not isinstance(entry, dict) or entry.get("id") is None:
                continue
            login = (entry.get("account") or {}).get("login")
            if entry.get("suspended_at"):
                log_event("github_app", f"installation={entry['id']} ({login or '-'}) suspended, skipping")
                continue
            found.append({"id": entry["id"], "login": login, "headers": None, "repositories": None})
        log_event("github_app", f"app={self.app_id} discovered installations={len(found)}")
        return found

    def installation_headers(self, installation_id):
        data, _ = self._client().request(
            "POST", f"/app/installations/{installation_id}/access_tokens", ok=(201,)
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise GitHubApiError(f"No access token returned for installation {installation_id}")
        return auth_headers(token)
