"""
Structural validation of kubeconfig documents.

Validation never contacts the cluster; it only makes sure the document has
the sections the kubernetes client needs before we hand it over.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from mcp_server_runtime.exceptions import KubeconfigValidationError

logger = logging.getLogger(__name__)


def parse_kubeconfig(content: str, path: str | None = None) -> dict[str, Any]:
    """Parse kubeconfig text into a mapping.

    Raises:
        KubeconfigValidationError: If the text is not a YAML mapping
    """
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise KubeconfigValidationError(
            f"Malformed kubeconfig: could not parse YAML ({e})", path
        ) from e

    if not isinstance(document, dict):
        raise KubeconfigValidationError("Malformed kubeconfig: could not parse YAML", path)
    return document


def _first_entry(document: dict[str, Any], section: str) -> Any:
    entries = document.get(section)
    if not isinstance(entries, list) or not entries:
        return None
    return entries[0]


def validate_kubeconfig_document(document: dict[str, Any], path: str | None = None) -> None:
    """Check that a parsed kubeconfig has clusters, contexts and users.

    Raises:
        KubeconfigValidationError: Naming the first missing or incomplete section
    """
    cluster = _first_entry(document, "clusters")
    if cluster is None:
        raise KubeconfigValidationError("Invalid kubeconfig: clusters section missing", path)

    # Entries are {name, cluster: {server}} in real files; accept a flat server too
    cluster_details = cluster.get("cluster") if isinstance(cluster, dict) else None
    server = None
    if isinstance(cluster_details, dict):
        server = cluster_details.get("server")
    if server is None and isinstance(cluster, dict):
        server = cluster.get("server")
    if not isinstance(cluster, dict) or not cluster.get("name") or not server:
        raise KubeconfigValidationError(
            "Invalid kubeconfig: cluster entry is missing required fields", path
        )

    if _first_entry(document, "contexts") is None:
        raise KubeconfigValidationError("Invalid kubeconfig: contexts section missing", path)

    if _first_entry(document, "users") is None:
        raise KubeconfigValidationError("Invalid kubeconfig: users section missing", path)


def validate_kubeconfig(path: str | None) -> None:
    """Validate the kubeconfig file at path.

    No path means the default or in-cluster resolution is used, which is
    always accepted here.

    Raises:
        KubeconfigValidationError: If the file is missing, unparsable or incomplete
    """
    if not path:
        return

    kubeconfig_path = Path(path).expanduser()
    if not kubeconfig_path.is_file():
        raise KubeconfigValidationError(f"Kubeconfig file not found: {path}", path)

    with kubeconfig_path.open() as f:
        document = parse_kubeconfig(f.read(), path)

    validate_kubeconfig_document(document, path)
    logger.debug("Kubeconfig at %s passed structural validation", path)
