import os
import re
import sys
from datetime import datetime, timezone


DEFAULT_LOG_PATH = "logs/queen-reconcile.log"
LEVELS = ("debug", "info", "warning", "error")


def _log_path():
    return os.environ.get("QUEEN_LOG_PATH", DEFAULT_LOG_PATH)


def _debug_enabled():
    return os.environ.get("QUEEN_DEBUG", "").strip().lower() in ("1", "true", "yes", "on")


def _sanitize(text):
    value = str(text)
    value = re.sub(r"(?i)\b(token|bearer)\s+[A-Za-z0-9._\-]+", r"\1 [REDACTED]", value)
    value = re.sub(r"(?i)authorization\s*[:=]\s*[^\s,;]+", "Authorization=[REDACTED]", value)
    value = re.sub(r"\s+", " ", value).strip()
    return value


def log_event(component: str, message: str, level: str = "info") -> None:
    level = level if level in LEVELS else "info"
    if level == "debug" and not _debug_enabled():
        return
    path = _log_path()
    line = (
        f"{datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')} "
        f"{level.upper()} [{_sanitize(component)}] {_sanitize(message)}"
    )
    if level in ("warning", "error"):
        print(line, file=sys.stderr)
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except Exception:
        return
