"""
Secrets management for MCP server installations.

Two kinds of secrets are handled here:

* the generic secret of an installation (API keys, tokens), one per server
* registry credential secrets ("regcred"), one per (registry, username) pair
  of a server, used as image pull secrets

Label strings are only produced at the cluster boundary; callers work with
SecretKind and the typed models.
"""

import base64
import json
import logging
from collections.abc import Iterable, Mapping

from kubernetes.client.models import V1ObjectMeta, V1Secret
from kubernetes.client.rest import ApiException

from mcp_server_runtime.cluster import ResourceClient
from mcp_server_runtime.exceptions import (
    handle_kubernetes_errors,
    handle_optional_kubernetes_resource,
    log_operation_start,
    log_operation_success,
)
from mcp_server_runtime.models import (
    CatalogEnvironmentEntry,
    EnvironmentValueType,
    ImagePullSecretEntry,
    ImagePullSecretSource,
    RegistrySecretSummary,
    SecretKind,
    ServerRecord,
)
from mcp_server_runtime.naming import (
    APP_LABEL,
    APP_LABEL_VALUE,
    SECRET_TYPE_LABEL,
    SERVER_ID_LABEL,
    TEAM_ID_LABEL,
    label_selector,
    regcred_secret_name,
    sanitize_label_value,
    secret_name,
    server_labels,
)

logger = logging.getLogger(__name__)

REGCRED_PASSWORD_PREFIX = "__regcred_password:"
DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"


def regcred_password_key(registry: str, username: str) -> str:
    """Secret value key holding the password of one registry credential"""
    return f"{REGCRED_PASSWORD_PREFIX}{registry}:{username}"


def split_registry_passwords(
    secret_values: Mapping[str, str],
) -> tuple[dict[str, str], dict[str, str]]:
    """Separate registry passwords from the values exposed to the container.

    Returns:
        (environment secrets, registry passwords keyed by regcred_password_key)
    """
    environment: dict[str, str] = {}
    passwords: dict[str, str] = {}
    for key, value in secret_values.items():
        if key.startswith(REGCRED_PASSWORD_PREFIX):
            passwords[key] = value
        else:
            environment[key] = value
    return environment, passwords


def merge_installation_secrets(
    secret_values: Mapping[str, str],
    catalog_environment: Iterable[CatalogEnvironmentEntry] | None,
) -> dict[str, str]:
    """Compose the generic secret of an installation.

    Catalog entries of type secret that are not prompted on installation and
    carry a value are added, but never replace a key the installation already
    provides.
    """
    merged = dict(secret_values)
    for entry in catalog_environment or []:
        if entry.type != EnvironmentValueType.SECRET or entry.promptOnInstallation:
            continue
        if not entry.value:
            continue
        if entry.key in merged:
            logger.debug("Keeping installation value for secret key %s", entry.key)
            continue
        merged[entry.key] = entry.value
    return merged


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def build_docker_config_json(
    registry: str, username: str, password: str, email: str | None = None
) -> str:
    """Render a .dockerconfigjson payload for one registry credential"""
    auth: dict[str, str] = {
        "username": username,
        "password": password,
        "auth": _encode(f"{username}:{password}"),
    }
    if email:
        auth["email"] = email
    return json.dumps({"auths": {registry: auth}})


def _secret_labels(
    kind: SecretKind, server_id: str, server_name: str | None = None
) -> dict[str, str]:
    labels = server_labels(server_id, server_name)
    labels[SECRET_TYPE_LABEL] = kind.value
    return labels


class SecretsCoordinator:
    """Creates, lists and removes the secrets that belong to MCP servers"""

    def __init__(self, cluster: ResourceClient) -> None:
        self.cluster = cluster

    @property
    def namespace(self) -> str:
        return self.cluster.namespace

    def generic_secret_manifest(
        self, server_id: str, data: Mapping[str, str], server_name: str | None = None
    ) -> V1Secret:
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=V1ObjectMeta(
                name=secret_name(server_id),
                namespace=self.namespace,
                labels=_secret_labels(SecretKind.GENERIC, server_id, server_name),
            ),
            type="Opaque",
            data={key: _encode(value) for key, value in data.items()},
        )

    def registry_secret_manifest(
        self,
        server: ServerRecord,
        entry: ImagePullSecretEntry,
        password: str,
    ) -> V1Secret:
        registry = entry.server or ""
        username = entry.username or ""
        labels = _secret_labels(SecretKind.REGCRED, server.id)
        if server.teamId:
            labels[TEAM_ID_LABEL] = sanitize_label_value(server.teamId)

        payload = build_docker_config_json(registry, username, password, entry.email)
        return V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=V1ObjectMeta(
                name=regcred_secret_name(server.id, registry, username),
                namespace=self.namespace,
                labels=labels,
            ),
            type=DOCKER_CONFIG_JSON_TYPE,
            data={DOCKER_CONFIG_JSON_KEY: _encode(payload)},
        )

    async def _upsert(self, body: V1Secret) -> None:
        name = body.metadata.name
        try:
            await self.cluster.create_secret(body)
            logger.info("Created secret %s in namespace %s", name, self.namespace)
        except ApiException as e:
            if e.status != 409:
                raise
            logger.info("Secret %s already exists, replacing it", name)
            await self.cluster.replace_secret(name, body)

    @handle_kubernetes_errors("creating", "secret")
    async def ensure_generic_secret(
        self, server_id: str, data: Mapping[str, str], server_name: str | None = None
    ) -> str | None:
        """Create or replace the generic secret of a server.

        Returns:
            The secret name, or None when there was nothing to store
        """
        if not data:
            logger.debug("No secret values for MCP server %s, skipping secret creation", server_id)
            return None

        body = self.generic_secret_manifest(server_id, data, server_name)
        await self._upsert(body)
        return str(body.metadata.name)

    @handle_kubernetes_errors("creating", "registry secrets")
    async def create_registry_secrets(
        self,
        server: ServerRecord,
        entries: Iterable[ImagePullSecretEntry],
        passwords: Mapping[str, str],
    ) -> list[str]:
        """Create the regcred secrets a server needs to pull its image.

        Entries with source existing are passed through by name and never
        created.

        Returns:
            Names of every image pull secret the workload should reference
        """
        pull_secret_names: list[str] = []
        for entry in entries:
            if entry.source == ImagePullSecretSource.EXISTING:
                if entry.name:
                    pull_secret_names.append(entry.name)
                continue

            if not entry.server or not entry.username:
                logger.warning(
                    "Skipping registry credential without server or username for MCP server %s",
                    server.id,
                )
                continue

            password = passwords.get(regcred_password_key(entry.server, entry.username))
            if password is None:
                logger.warning(
                    "No password stored for registry %s user %s of MCP server %s",
                    entry.server,
                    entry.username,
                    server.id,
                )
                continue

            body = self.registry_secret_manifest(server, entry, password)
            await self._upsert(body)
            pull_secret_names.append(str(body.metadata.name))

        return pull_secret_names

    @handle_optional_kubernetes_resource("deleting", "secret", default_value=None)
    async def delete_generic_secret(self, server_id: str) -> None:
        name = secret_name(server_id)
        await self.cluster.delete_secret(name)
        logger.info("Deleted secret %s", name)

    @handle_kubernetes_errors("deleting", "registry secrets")
    async def delete_registry_secrets(self, server_id: str) -> list[str]:
        """Delete the regcred secrets created for one server.

        Only secrets carrying this server's mcp-server-id label are selected,
        so secrets of other servers and pre-existing pull secrets survive.
        """
        selector = label_selector(
            {
                APP_LABEL: APP_LABEL_VALUE,
                SECRET_TYPE_LABEL: SecretKind.REGCRED.value,
                SERVER_ID_LABEL: sanitize_label_value(server_id),
            }
        )
        deleted: list[str] = []
        for secret in await self.cluster.list_secrets(selector):
            name = secret.metadata.name
            try:
                await self.cluster.delete_secret(name)
            except ApiException as e:
                if e.status != 404:
                    raise
                logger.debug("Registry secret %s already gone", name)
                continue
            deleted.append(name)

        if deleted:
            logger.info("Deleted %d registry secrets of MCP server %s", len(deleted), server_id)
        return deleted

    async def _list_all_registry_secrets(self) -> list[V1Secret]:
        selector = label_selector(
            {APP_LABEL: APP_LABEL_VALUE, SECRET_TYPE_LABEL: SecretKind.REGCRED.value}
        )
        return await self.cluster.list_secrets(selector)

    @handle_kubernetes_errors("listing", "registry secrets")
    async def list_registry_secrets(
        self, is_admin: bool = False, team_ids: Iterable[str] | None = None
    ) -> list[RegistrySecretSummary]:
        """List regcred secrets visible to the caller.

        Admins see every regcred secret. Everyone else sees the secrets of
        their teams. Without any scope nothing is returned and the cluster is
        not queried.
        """
        teams = {sanitize_label_value(team_id) for team_id in team_ids or []}
        if not is_admin and not teams:
            logger.debug("No admin scope or team ids given, returning no registry secrets")
            return []

        secrets = await self._list_all_registry_secrets()
        if not is_admin:
            secrets = [
                secret
                for secret in secrets
                if (secret.metadata.labels or {}).get(TEAM_ID_LABEL) in teams
            ]
        return [RegistrySecretSummary(name=secret.metadata.name) for secret in secrets]

    @handle_kubernetes_errors("backfilling", "registry secret labels")
    async def backfill_team_labels(self, servers: Iterable[ServerRecord]) -> int:
        """Add the team-id label to legacy regcred secrets.

        Only secrets that lack a team-id and belong to one of the given
        servers are patched. A failing patch is logged and the remaining
        secrets are still processed.

        Returns:
            Number of secrets patched
        """
        teams_by_server = {
            sanitize_label_value(server.id): sanitize_label_value(server.teamId)
            for server in servers
            if server.teamId
        }
        if not teams_by_server:
            logger.debug("No servers with a team, skipping registry secret backfill")
            return 0

        log_operation_start("backfilling team labels", "registry secrets", self.namespace)
        patched = 0
        for secret in await self._list_all_registry_secrets():
            labels = secret.metadata.labels or {}
            if TEAM_ID_LABEL in labels:
                continue
            team_id = teams_by_server.get(labels.get(SERVER_ID_LABEL, ""))
            if team_id is None:
                continue

            name = secret.metadata.name
            try:
                await self.cluster.patch_secret(
                    name, {"metadata": {"labels": {TEAM_ID_LABEL: team_id}}}
                )
            except Exception as e:
                logger.error("Failed to backfill team-id label on secret %s: %s", name, e)
                continue
            patched += 1
            logger.info("Added team-id %s to registry secret %s", team_id, name)

        log_operation_success("backfilling team labels", "registry secrets", self.namespace)
        return patched
