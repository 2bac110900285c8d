import os
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from .logging import get_logger
from .paths import default_state_file, expand_abs, find_project_root

log = get_logger("config")

DEFAULT_SCAN_HOST = "http://localhost:2020"
DEFAULT_MOTOR_HOST = "http://localhost:2021"
DEFAULT_HTTP_TIMEOUT = 30.0
DOTENV_NAME = ".env"


def _ancestors(start_dir: str) -> Iterator[Path]:
    here = Path(start_dir or ".").resolve()
    yield here
    yield from here.parents


def _parse_dotenv_line(line: str) -> Optional[Tuple[str, str]]:
    """Split one ``.env`` line into (key, value); None for comments and junk.

    Accepts an optional ``export`` prefix. Quoted values are taken verbatim;
    unquoted values lose a trailing `` #comment``.
    """
    text = line.strip()
    if text.startswith("export "):
        text = text[len("export "):].lstrip()
    if not text or text[0] in "#;":
        return None
    key, sep, value = text.partition("=")
    key = key.strip()
    if not sep or not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return key, value[1:-1]
    return key, value.split(" #", 1)[0].strip()


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Return the pairs of the nearest ``.env`` at or above dotenv_dir, without touching os.environ."""
    path = next((d / DOTENV_NAME for d in _ancestors(dotenv_dir) if (d / DOTENV_NAME).is_file()), None)
    if path is None:
        log.debug(f"No {DOTENV_NAME} above {dotenv_dir}")
        return {}
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        log.warning(f"Cannot read {path}: {exc}")
        return {}
    pairs = dict(filter(None, map(_parse_dotenv_line, lines)))
    log.debug(f"{path}: {len(pairs)} setting(s)")
    return pairs


def _source(dotenv_dir: str, key: str) -> Tuple[Optional[str], str]:
    """Return (value, origin) for key; the process environment beats ``.env``."""
    value = (os.environ.get(key) or "").strip()
    if value:
        return value, "environment"
    value = (_read_dotenv(dotenv_dir).get(key) or "").strip()
    if value:
        return value, DOTENV_NAME
    return None, "unset"


def _lookup(dotenv_dir: str, key: str) -> Optional[str]:
    return _source(dotenv_dir, key)[0]


def load_auth_token(dotenv_dir: str) -> Optional[str]:
    token, origin = _source(dotenv_dir, "AUTH_TOKEN")
    if token:
        log.info(f"AUTH_TOKEN taken from {origin}")
    else:
        log.debug("AUTH_TOKEN not configured")
    return token


def load_scan_host(dotenv_dir: str, fallback: str = DEFAULT_SCAN_HOST) -> str:
    return (_lookup(dotenv_dir, "SCAN_HOST") or fallback).rstrip("/")


def load_motor_host(dotenv_dir: str, fallback: str = DEFAULT_MOTOR_HOST) -> str:
    return (_lookup(dotenv_dir, "MOTOR_HOST") or fallback).rstrip("/")


def load_http_timeout(dotenv_dir: str, fallback: float = DEFAULT_HTTP_TIMEOUT) -> float:
    raw = _lookup(dotenv_dir, "HTTP_TIMEOUT")
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        log.warning(f"Ignoring non-numeric HTTP_TIMEOUT={raw!r}; using {fallback}s")
        return fallback
    return value if value > 0 else fallback


def load_state_file(dotenv_dir: str) -> str:
    """Return the snapshot path: STATE_FILE or var/state/entries.json at repo root."""
    raw = _lookup(dotenv_dir, "STATE_FILE")
    if raw:
        return expand_abs(raw)
    return default_state_file(find_project_root(dotenv_dir))
