"""
Runtime settings for the MCP server runtime.

Settings come from environment variables. When MCP_RUNTIME_CONFIG points at a
YAML file its values are loaded first and the environment overrides them.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from mcp_server_runtime.exceptions import RuntimeConfigError

logger = logging.getLogger(__name__)

DEFAULT_BASE_IMAGE = "ghcr.io/mcp-server-runtime/mcp-server-base:0.1.0"

# Environment variable -> settings field
ENV_FIELDS = {
    "MCP_RUNTIME_K8S_NAMESPACE": "namespace",
    "MCP_RUNTIME_KUBECONFIG": "kubeconfig",
    "MCP_RUNTIME_KUBECONFIG_CONTENT": "kubeconfig_content",
    "MCP_RUNTIME_LOAD_KUBECONFIG_FROM_CURRENT_CLUSTER": "load_from_current_cluster",
    "MCP_RUNTIME_BASE_IMAGE": "base_image",
    "MCP_RUNTIME_REQUEST_TIMEOUT": "request_timeout_seconds",
    "MCP_RUNTIME_STATUS_POLL_INTERVAL": "status_poll_interval_seconds",
    "MCP_RUNTIME_LOG_TAIL_LINES": "log_tail_lines",
}


class RuntimeSettings(BaseModel):
    """Connection and behaviour settings for the runtime manager"""

    namespace: str = Field(default="default", description="Namespace for MCP server objects")
    kubeconfig: str | None = Field(default=None, description="Path to a kubeconfig file")
    kubeconfig_content: str | None = Field(default=None, description="Inline kubeconfig YAML")
    load_from_current_cluster: bool = Field(
        default=False, description="Use the service account of the current pod"
    )
    base_image: str = Field(default=DEFAULT_BASE_IMAGE, description="Default MCP server image")
    request_timeout_seconds: float = Field(
        default=30.0, description="Timeout for each cluster API call", gt=0
    )
    status_poll_interval_seconds: float = Field(
        default=10.0, description="Interval between status refreshes", gt=0
    )
    log_tail_lines: int = Field(default=100, description="Log lines replayed on attach", ge=1)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RuntimeSettings":
        """Build settings from the environment (and optional YAML file)"""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        config_path = env.get("MCP_RUNTIME_CONFIG", "")
        if config_path:
            values.update(load_settings_file(config_path))

        for env_name, field_name in ENV_FIELDS.items():
            raw = env.get(env_name)
            if raw is None or raw == "":
                continue
            if field_name == "load_from_current_cluster":
                values[field_name] = raw.strip().lower() == "true"
            else:
                values[field_name] = raw

        try:
            return cls(**values)
        except ValidationError as e:
            raise RuntimeConfigError(f"Invalid runtime settings: {e}", config_path or None) from e


def load_settings_file(config_path: str) -> dict[str, Any]:
    """Load runtime settings from a YAML file."""
    if not Path(config_path).exists():
        raise RuntimeConfigError(
            f"Runtime configuration file not found at: {config_path}. "
            "Ensure MCP_RUNTIME_CONFIG points to a valid configuration file.",
            config_path,
        )

    logger.info("Loading runtime config from: %s", config_path)
    with Path(config_path).open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeConfigError(
                f"Could not parse runtime configuration {config_path}: {e}", config_path
            ) from e

    if not isinstance(data, dict):
        raise RuntimeConfigError(
            f"Runtime configuration {config_path} must be a mapping", config_path
        )
    return data
