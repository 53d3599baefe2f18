from __future__ import annotations

import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .errors import ConfigValidationError
from .models import AgentConfig


DEFAULT_CANARY_PREFIX = "CANARY-"

RESERVED_AGENT_NAMES = {"all"}
MCP_SERVER_TYPES = {"sse", "stdio", "streamable_http"}

_TAG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:/-]{0,63}$")


def unknown_keys_message(unknown: set[str]) -> str:
    keys = ", ".join(sorted(unknown))
    return f"unknown keys: {keys}"


def check_keys(path: Path, tbl: dict[str, Any], allowed: set[str], where: str | None = None) -> None:
    unknown = set(tbl.keys()) - allowed
    if unknown:
        msg = unknown_keys_message({str(k) for k in unknown})
        raise ConfigValidationError(path=path, message=f"{where}: {msg}" if where else msg)


def require_table(path: Path, value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigValidationError(path=path, message=f"{where}: expected mapping")
    return value


def optional_table(path: Path, value: Any, where: str) -> dict[str, Any] | None:
    if value is None:
        return None
    return require_table(path, value, where)


def require_list(path: Path, value: Any, where: str) -> list[Any]:
    if not isinstance(value, list):
        raise ConfigValidationError(path=path, message=f"{where}: expected list")
    return value


def optional_list(path: Path, value: Any, where: str) -> list[Any]:
    if value is None:
        return []
    return require_list(path, value, where)


def require_str(path: Path, value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ConfigValidationError(path=path, message=f"{where}: expected string")
    return value


def optional_str(path: Path, value: Any, where: str) -> str | None:
    if value is None:
        return None
    return require_str(path, value, where)


def require_bool(path: Path, value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigValidationError(path=path, message=f"{where}: expected bool")
    return value


def optional_bool(path: Path, value: Any, where: str) -> bool | None:
    if value is None:
        return None
    return require_bool(path, value, where)


def require_positive_int(path: Path, value: Any, where: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigValidationError(path=path, message=f"{where}: expected positive integer")
    return value


def optional_positive_int(path: Path, value: Any, where: str) -> int | None:
    if value is None:
        return None
    return require_positive_int(path, value, where)


def require_str_list(path: Path, value: Any, where: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigValidationError(path=path, message=f"{where}: expected list of strings")
    return value


def optional_str_list(path: Path, value: Any, where: str) -> list[str]:
    if value is None:
        return []
    return require_str_list(path, value, where)


def validate_agent_name(path: Path, name: str, where: str) -> str:
    if not name.strip():
        raise ConfigValidationError(path=path, message=f"{where}: agent name must not be empty")
    if name.lower() in RESERVED_AGENT_NAMES:
        raise ConfigValidationError(path=path, message=f"{where}: agent name '{name}' is reserved")
    if name.startswith(DEFAULT_CANARY_PREFIX):
        raise ConfigValidationError(
            path=path,
            message=f"{where}: agent name '{name}' uses the reserved canary prefix '{DEFAULT_CANARY_PREFIX}'",
        )
    return name


def validate_tags(path: Path, tags: list[str], where: str) -> list[str]:
    for tag in tags:
        if not _TAG_RE.match(tag):
            raise ConfigValidationError(path=path, message=f"{where}: invalid tag {tag!r}")
    return tags


def is_self_hosted(base_url: str) -> bool:
    """True when `base_url` is not the hosted Letta cloud (letta.com or a subdomain)."""

    host = (urlparse(base_url).hostname or "").lower()
    return not (host == "letta.com" or host.endswith(".letta.com"))


def validate_embeddings(path: Path, agents: list[AgentConfig], base_url: str) -> None:
    """Self-hosted servers have no default embedding; every agent must declare one."""

    if not is_self_hosted(base_url):
        return
    missing = [a.name for a in agents if not a.embedding and not a.embedding_config]
    if missing:
        names = ", ".join(missing)
        raise ConfigValidationError(
            path=path,
            message=(
                f"self-hosted server at {base_url} requires 'embedding' or 'embedding_config' "
                f"for every agent; missing for: {names}"
            ),
        )
