import os
import re
from datetime import datetime, timezone


DEFAULT_LOG_PATH = ".trustgate/logs/trustgate.log"


def _log_path():
    return os.environ.get("TRUSTGATE_LOG_PATH", DEFAULT_LOG_PATH)


def _sanitize(text):
    value = str(text)
    value = re.sub(r"(?i)authorization\s*[:=]\s*[^\s,;]+", "Authorization=[REDACTED]", value)
    value = re.sub(r"(?i)\b(token|bearer|password)(?:\s*[:=]\s*|\s+)[^\s,;]+", r"\1 [REDACTED]", value)
    value = re.sub(r"\s+", " ", value).strip()
    return value


def log_event(component: str, message: str) -> None:
    path = _log_path()
    line = (
        f"{datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')} "
        f"[{_sanitize(component)}] {_sanitize(message)}"
    )
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except Exception:
        return
