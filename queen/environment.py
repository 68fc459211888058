import json
import os
from pathlib import Path

from queen.phase_gate.github_client import DEFAULT_API_BASE, auth_headers
from queen.phase_gate.logger import log_event
from queen.phase_gate.retry import RetryPolicy

DEFAULT_ENV_PATH = "agents/state/environment.json"


class EnvironmentConfigError(Exception):
    pass


def _env_path(environ):
    return environ.get("QUEEN_ENV_PATH", DEFAULT_ENV_PATH)


def _read_env_file(path):
    path = Path(path)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        log_event("environment", f"load_failed path={path} error={exc}", level="error")
        raise EnvironmentConfigError(f"Failed to read environment file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise EnvironmentConfigError(f"Environment file {path} must contain a JSON object")
    return data


def _token(env, environ):
    token = (
        env.get("api_token")
        or env.get("github_token")
        or env.get("token")
        or env.get("access_token")
    )
    if not token:
        token = environ.get("GITHUB_TOKEN") or environ.get("GH_TOKEN")
    return token or None


def _int_setting(environ, name, default):
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return max(0, int(raw))
    except ValueError:
        log_event("environment", f"invalid {name}={raw!r}, using default={default}", level="warning")
        return default


def _repository_list(value):
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        raise EnvironmentConfigError("repositories must be a list of owner/repo names")
    repos = []
    for entry in value:
        name = str(entry).strip()
        if not name:
            continue
        if name.count("/") != 1 or name.startswith("/") or name.endswith("/"):
            raise EnvironmentConfigError(f"Invalid repository name: {name!r} (expected owner/repo)")
        repos.append(name)
    return repos


def _app_credentials(env, environ):
    app_id = env.get("app_id") or environ.get("APP_ID")
    private_key = env.get("private_key") or environ.get("PRIVATE_KEY") or environ.get("APP_PRIVATE_KEY")
    key_path = env.get("private_key_path") or environ.get("PRIVATE_KEY_PATH")
    if not (app_id or private_key or key_path):
        return None
    if not app_id:
        raise EnvironmentConfigError("GitHub App private key given without APP_ID")
    if not private_key and key_path:
        try:
            private_key = Path(key_path).read_text(encoding="utf-8")
        except OSError as exc:
            raise EnvironmentConfigError(f"Failed to read private key {key_path}: {exc}") from exc
    if not private_key:
        raise EnvironmentConfigError("Missing GitHub App private key: set PRIVATE_KEY or APP_PRIVATE_KEY")
    return {"app_id": str(app_id).strip(), "private_key": private_key}


def load_environment(env_path=None, environ=None):
    """Credentials, targets and retry tuning for one reconciliation run.

    An explicit installations list or a static token selects token mode.
    Otherwise GitHub App credentials select app mode, where installations
    are discovered and their tokens minted at run time.
    """
    environ = os.environ if environ is None else environ
    env = _read_env_file(env_path or _env_path(environ))

    api_base = env.get("api_base") or environ.get("GITHUB_API_URL") or DEFAULT_API_BASE
    bot_login = (env.get("bot_login") or environ.get("QUEEN_BOT_LOGIN") or "").strip() or None

    app = None
    installations = []
    raw_installations = env.get("installations")
    if raw_installations is not None:
        if not isinstance(raw_installations, list):
            raise EnvironmentConfigError("installations must be a list")
        for index, entry in enumerate(raw_installations):
            if not isinstance(entry, dict):
                raise EnvironmentConfigError(f"installations[{index}] must be an object")
            token = entry.get("token") or _token(env, environ)
            if not token:
                raise EnvironmentConfigError(f"installations[{index}] has no token")
            installations.append(
                {
                    "id": entry.get("id", index),
                    "login": entry.get("login"),
                    "headers": auth_headers(token),
                    "repositories": _repository_list(entry.get("repositories")),
                }
            )
    else:
        token = _token(env, environ)
        app = None if token else _app_credentials(env, environ)
        if not token and app is None:
            raise EnvironmentConfigError(
                "Missing credentials: set GITHUB_TOKEN, api_token, or APP_ID with PRIVATE_KEY"
            )
        if token:
            repositories = env.get("repositories")
            if repositories is None:
                repositories = environ.get("QUEEN_REPOSITORIES") or None
            installations.append(
                {
                    "id": env.get("installation_id", 0),
                    "login": env.get("login"),
                    "headers": auth_headers(token),
                    "repositories": _repository_list(repositories),
                }
            )

    # Bot comments are recognised by author alone; app mode resolves the
    # login from the app slug when it is not configured.
    if app is None and not bot_login:
        raise EnvironmentConfigError(
            "Missing bot identity: set QUEEN_BOT_LOGIN or bot_login in the environment file"
        )

    retry_policy = RetryPolicy(
        max_attempts=max(1, _int_setting(environ, "QUEEN_RETRY_MAX_ATTEMPTS", 3)),
        base_delay_ms=max(1, _int_setting(environ, "QUEEN_RETRY_BASE_DELAY_MS", 1000)),
        budget_ms=_int_setting(environ, "QUEEN_RETRY_BUDGET_MS", 30000),
    )
    log_event(
        "environment",
        f"loaded api_base={api_base} mode={'app' if app else 'token'} "
        f"installations={len(installations)} bot_login={bot_login or '-'}",
    )
    return {
        "api_base": api_base,
        "bot_login": bot_login,
        "app": app,
        "installations": installations,
        "retry_policy": retry_policy,
    }
