"""Kubernetes name and label helpers for MCP server resources.

Every object name and label value is derived from server, catalog or team
identifiers through these functions. The mapping is deterministic, so label
lookups keep working across restarts.
"""

import re

MAX_NAME_LENGTH = 253
MAX_LABEL_LENGTH = 63

APP_LABEL = "app"
APP_LABEL_VALUE = "mcp-server"
SERVER_ID_LABEL = "mcp-server-id"
SERVER_NAME_LABEL = "mcp-server-name"
SECRET_TYPE_LABEL = "type"
TEAM_ID_LABEL = "team-id"

_WHITESPACE = re.compile(r"\s+")
_INVALID_CHARS = re.compile(r"[^a-z0-9.-]")
_REPEATED_HYPHENS = re.compile(r"-+")
_REPEATED_DOTS = re.compile(r"\.+")
_LEADING_NON_ALNUM = re.compile(r"^[^a-z0-9]+")
_TRAILING_NON_ALNUM = re.compile(r"[^a-z0-9]+$")


def _sanitize(value: str, max_length: int) -> str:
    result = _WHITESPACE.sub("-", value.lower())
    result = _INVALID_CHARS.sub("", result)
    result = _REPEATED_HYPHENS.sub("-", result)
    result = _REPEATED_DOTS.sub(".", result)
    result = _LEADING_NON_ALNUM.sub("", result)
    result = _TRAILING_NON_ALNUM.sub("", result)
    # Truncation can expose a hyphen or dot at the end again
    return _TRAILING_NON_ALNUM.sub("", result[:max_length])


def ensure_rfc1123_compliant(value: str) -> str:
    """Convert a string into a valid Kubernetes DNS subdomain name.

    Example: "firecrawl - joey" -> "firecrawl-joey"
    """
    return _sanitize(value, MAX_NAME_LENGTH)


def sanitize_label_value(value: str) -> str:
    """Convert a string into a valid label value (63 chars max)"""
    return _sanitize(value, MAX_LABEL_LENGTH)


def sanitize_metadata_labels(labels: dict[str, str]) -> dict[str, str]:
    """Sanitize both keys and values of a label mapping"""
    return {sanitize_label_value(key): sanitize_label_value(value) for key, value in labels.items()}


def _required(value: str, source: str) -> str:
    if not value:
        raise ValueError(f"'{source}' does not contain any characters usable in a Kubernetes name")
    return value


def deployment_name(server_id: str) -> str:
    """Deployment name for a server, also a valid DNS-1035 service name"""
    return _required(_sanitize(f"mcp-{server_id}", MAX_LABEL_LENGTH), server_id)


def service_name(server_id: str) -> str:
    return deployment_name(server_id)


def secret_name(server_id: str) -> str:
    """Generic secret name: mcp-server-<id>-secrets"""
    sanitized = _required(sanitize_label_value(server_id), server_id)
    return f"mcp-server-{sanitized}-secrets"


def regcred_secret_name(server_id: str, registry: str, username: str) -> str:
    """Registry credential secret name for one (registry, username) pair of a server"""
    return ensure_rfc1123_compliant(f"mcp-server-{server_id}-regcred-{registry}-{username}")


def server_labels(server_id: str, server_name: str | None = None) -> dict[str, str]:
    """Labels shared by every object belonging to one MCP server"""
    labels = {
        APP_LABEL: APP_LABEL_VALUE,
        SERVER_ID_LABEL: sanitize_label_value(server_id),
    }
    if server_name:
        labels[SERVER_NAME_LABEL] = sanitize_label_value(server_name)
    return labels


def label_selector(labels: dict[str, str]) -> str:
    """Render an equality-based label selector"""
    return ",".join(f"{key}={value}" for key, value in labels.items())


def server_selector(server_id: str) -> str:
    return label_selector({SERVER_ID_LABEL: sanitize_label_value(server_id)})
