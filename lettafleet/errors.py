from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path


class FleetConfigError(Exception):
    """Base exception for fleet document parsing/validation errors."""


@dataclass(frozen=True)
class ConfigParseError(FleetConfigError):
    """Raised when a fleet document cannot be parsed as YAML."""

    path: Path
    message: str
    lineno: int | None = None
    colno: int | None = None

    def __str__(self) -> str:
        loc = ""
        if self.lineno is not None and self.colno is not None:
            loc = f" (line {self.lineno}, column {self.colno})"
        return f"Invalid YAML in {self.path}: {self.message}{loc}"


@dataclass(frozen=True)
class ConfigValidationError(FleetConfigError):
    """Raised when a parsed fleet document does not match the expected schema."""

    path: Path
    message: str

    def __str__(self) -> str:
        return f"Invalid config in {self.path}: {self.message}"


@dataclass(frozen=True)
class UnresolvedReferenceError(FleetConfigError):
    """Raised when an agent references a shared resource with no known id."""

    agent: str
    kind: str
    name: str

    def __str__(self) -> str:
        return f"Agent '{self.agent}' references {self.kind} '{self.name}' which was not provisioned in this run"


class PreconditionError(Exception):
    """Raised for invalid flag combinations, before any network call."""


class ApplyFailedError(Exception):
    """Raised at the end of a run when one or more agents failed."""

    def __init__(self, failed: list[str]):
        super().__init__(f"{len(failed)} agent(s) failed to apply")
        self.failed = failed


class AgentOperationError(Exception):
    """A remote call failed while applying one agent; the message is user-facing."""


_PROVIDER_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google_ai": "GOOGLE_AI_API_KEY",
    "google_vertex": "GOOGLE_VERTEX_API_KEY",
    "azure": "AZURE_API_KEY",
    "groq": "GROQ_API_KEY",
    "together": "TOGETHER_API_KEY",
}

_LIMIT_PATTERN = re.compile(r"Exceeds (\d+) character limit \(requested (\d+)\)", re.IGNORECASE)
_PROVIDER_PATTERN = re.compile(r"Provider (\w+) is not supported", re.IGNORECASE)


def format_letta_error(message: str, *, block_name: str | None = None) -> str:
    """Rewrite known server error messages into actionable text."""

    m = _LIMIT_PATTERN.search(message)
    if m:
        limit = int(m.group(1))
        actual = int(m.group(2))
        what = f"Memory block '{block_name}'" if block_name else "Memory block"
        return (
            f"{what} exceeds character limit\n"
            f"  Limit: {limit:,} characters\n"
            f"  Actual: {actual:,} characters\n"
            "  Hint: Increase the 'limit' field in your YAML or reduce content size"
        )

    m = _PROVIDER_PATTERN.search(message)
    if m:
        provider = m.group(1).lower()
        env_var = _PROVIDER_ENV_VARS.get(provider, f"{provider.upper()}_API_KEY")
        return (
            f"Provider '{provider}' is not configured on your Letta server.\n"
            f"To enable it, restart your Letta server with {env_var} environment variable set.\n"
            f"See: https://docs.letta.com/guides/server/providers/{provider}"
        )

    return message
