"""
Data models for the MCP server runtime
"""

from enum import Enum

from pydantic import BaseModel, Field


class ServerType(str, Enum):
    """Where an MCP server runs"""

    LOCAL = "local"
    REMOTE = "remote"


class ServerRecord(BaseModel):
    """MCP server installation as stored by the data layer"""

    id: str = Field(..., description="Server installation ID")
    name: str | None = Field(default=None, description="Display name of the installation")
    catalogId: str = Field(..., description="Catalog item the server was installed from")
    ownerId: str | None = Field(default=None, description="User who installed the server")
    teamId: str | None = Field(default=None, description="Team the installation belongs to")
    secretId: str | None = Field(default=None, description="Installation secret reference")
    serverType: ServerType = Field(default=ServerType.LOCAL, description="Server type")

    @property
    def is_local(self) -> bool:
        return self.serverType == ServerType.LOCAL

    @property
    def display_name(self) -> str:
        return self.name or self.id


class EnvironmentValueType(str, Enum):
    """Catalog environment entry types"""

    PLAIN_TEXT = "plain_text"
    SECRET = "secret"
    BOOLEAN = "boolean"
    NUMBER = "number"


class CatalogEnvironmentEntry(BaseModel):
    """Environment variable declared by a catalog item"""

    key: str = Field(..., description="Environment variable name")
    type: EnvironmentValueType = Field(..., description="Value type")
    promptOnInstallation: bool = Field(
        default=False, description="Whether the installer is asked for the value"
    )
    required: bool = Field(default=False, description="Whether a value must be provided")
    value: str | None = Field(default=None, description="Catalog-defined value")


class TransportType(str, Enum):
    """How the MCP server talks to its clients"""

    STDIO = "stdio"
    STREAMABLE_HTTP = "streamable-http"


class ImagePullSecretSource(str, Enum):
    """Origin of an image pull secret"""

    EXISTING = "existing"
    CREDENTIALS = "credentials"


class ImagePullSecretEntry(BaseModel):
    """Image pull secret requested by a catalog item"""

    source: ImagePullSecretSource = Field(..., description="Secret origin")
    name: str | None = Field(default=None, description="Name of an existing secret")
    server: str | None = Field(default=None, description="Registry host")
    username: str | None = Field(default=None, description="Registry username")
    email: str | None = Field(default=None, description="Registry account email")


class LaunchSpec(BaseModel):
    """Container launch configuration for a local MCP server"""

    docker_image: str | None = Field(default=None, description="Image override")
    command: str | None = Field(default=None, description="Container command")
    arguments: list[str] = Field(default_factory=list, description="Container arguments")
    transport_type: TransportType = Field(default=TransportType.STDIO, description="Transport")
    http_port: int = Field(default=8080, description="HTTP port", ge=1, le=65535)
    image_pull_secrets: list[ImagePullSecretEntry] = Field(
        default_factory=list, description="Image pull secrets"
    )

    @property
    def needs_http(self) -> bool:
        return self.transport_type == TransportType.STREAMABLE_HTTP


class SecretKind(str, Enum):
    """Kinds of secrets managed for MCP servers"""

    GENERIC = "secret"
    REGCRED = "regcred"


class DeploymentState(str, Enum):
    """Lifecycle state of one MCP server deployment"""

    NOT_CREATED = "not_created"
    PENDING = "pending"
    DISCOVERING_TOOLS = "discovering_tools"
    RUNNING = "running"
    ERROR = "error"


class RuntimeStatus(str, Enum):
    """Lifecycle state of the runtime manager"""

    NOT_INITIALIZED = "not_initialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    ERROR = "error"
    STOPPED = "stopped"


class DeploymentStatusEntry(BaseModel):
    """Status of one MCP server deployment"""

    state: DeploymentState = Field(..., description="Deployment state")
    message: str = Field(..., description="Human readable status")
    error: str | None = Field(default=None, description="Failure reason")
    serverName: str = Field(..., description="Server display name")
    deploymentName: str | None = Field(default=None, description="Deployment name")
    namespace: str = Field(..., description="Kubernetes namespace")


class RuntimeStatusSummary(BaseModel):
    """Runtime status together with every known local server"""

    status: RuntimeStatus = Field(..., description="Runtime status")
    mcpServers: dict[str, DeploymentStatusEntry] = Field(
        default_factory=dict, description="Deployment status keyed by server ID"
    )


class RegistrySecretSummary(BaseModel):
    """Registry credential secret visible to a caller"""

    name: str = Field(..., description="Secret name")


class ContainerLogs(BaseModel):
    """Snapshot of an MCP server container's logs"""

    logs: str = Field(..., description="Log text")
    containerName: str = Field(..., description="Container the logs came from")
    command: str = Field(..., description="Command to follow these logs manually")
    namespace: str = Field(..., description="Kubernetes namespace")
