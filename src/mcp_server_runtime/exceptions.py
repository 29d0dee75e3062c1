"""
Error handling utilities and custom exceptions for the MCP server runtime
"""

import functools
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from kubernetes.client.rest import ApiException

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)


class RuntimeManagerError(Exception):
    """Base exception for runtime manager operations"""

    def __init__(self, message: str, operation: str, resource: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.resource = resource


class KubeconfigValidationError(RuntimeManagerError):
    """Raised when a kubeconfig document is structurally unusable"""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, "validating kubeconfig", path)
        self.path = path


class RuntimeConfigError(RuntimeManagerError):
    """Raised when runtime settings cannot be loaded"""

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message, "loading runtime settings", source)


class KubernetesOperationError(RuntimeManagerError):
    """Exception for Kubernetes API operation failures"""

    def __init__(
        self,
        message: str,
        operation: str,
        resource: str,
        api_exception: ApiException | None = None,
    ):
        super().__init__(message, operation, resource)
        self.api_exception = api_exception
        self.status_code = api_exception.status if api_exception else None

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class ClusterTimeoutError(RuntimeManagerError):
    """A cluster API call did not complete within its timeout.

    Timeouts are retryable: the resource may or may not have been changed,
    and the caller is expected to retry the whole operation.
    """

    retryable = True

    def __init__(self, operation: str, resource: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s while {operation} {resource}", operation, resource
        )
        self.timeout = timeout


class TeardownError(RuntimeManagerError):
    """A step of the server teardown sequence failed"""

    def __init__(self, server_id: str, step: str, cause: Exception) -> None:
        super().__init__(
            f"Failed to stop MCP server '{server_id}' during step '{step}': {cause}",
            "stopping server",
            f"server:{server_id}",
        )
        self.server_id = server_id
        self.step = step
        self.cause = cause


def _resource_id(args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    # Decorated methods take the resource (name, server id or bundle) right after self
    if len(args) > 1:
        return str(args[1])
    for key in ("name", "server_id", "bundle"):
        if key in kwargs:
            return str(kwargs[key])
    return "unknown"


def _log_api_failure(operation: str, resource: str, e: ApiException) -> None:
    if e.status == 404:
        level = logging.INFO
    elif e.status in (400, 401, 403, 409):
        level = logging.WARNING
    else:
        level = logging.ERROR
    logger.log(
        level, "Kubernetes API returned %s while %s %s: %s", e.status, operation, resource, e.reason
    )
    if level == logging.ERROR and e.body:
        logger.error("Response body: %s", e.body)


def _kubernetes_call(
    operation: str, resource_type: str, missing_ok: bool, default_value: Any
) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except RuntimeManagerError:
                raise
            except ApiException as e:
                resource = f"{resource_type}:{_resource_id(args, kwargs)}"
                if missing_ok and e.status == 404:
                    logger.debug("%s is already gone while %s", resource, operation)
                    return default_value
                _log_api_failure(operation, resource, e)
                raise KubernetesOperationError(
                    message=f"Failed {operation} {resource}: {e.reason}",
                    operation=operation,
                    resource=resource,
                    api_exception=e,
                ) from e
            except Exception as e:
                resource = f"{resource_type}:{_resource_id(args, kwargs)}"
                logger.exception("Unexpected error while %s %s", operation, resource)
                raise RuntimeManagerError(
                    message=f"Failed {operation} {resource}: {type(e).__name__}: {e}",
                    operation=operation,
                    resource=resource,
                ) from e

        return wrapper  # type: ignore[return-value]

    return decorator


def handle_kubernetes_errors(operation: str, resource_type: str) -> Callable[[F], F]:
    """
    Convert Kubernetes API failures of a coroutine into runtime errors.

    ApiException becomes KubernetesOperationError carrying the HTTP status;
    anything else becomes RuntimeManagerError. Runtime errors pass through.

    Args:
        operation: What was being done, e.g. "creating"
        resource_type: Kind of object, e.g. "secret"
    """
    return _kubernetes_call(operation, resource_type, missing_ok=False, default_value=None)


def handle_optional_kubernetes_resource(
    operation: str, resource_type: str, default_value: Any = None
) -> Callable[[F], F]:
    """
    Like handle_kubernetes_errors, but a 404 returns default_value.

    Used for deletes and reads of objects that may already be gone.
    """
    return _kubernetes_call(operation, resource_type, missing_ok=True, default_value=default_value)


def log_operation_start(operation: str, resource_type: str, resource_id: str) -> None:
    logger.info("%s %s '%s'", operation.capitalize(), resource_type, resource_id)


def log_operation_success(operation: str, resource_type: str, resource_id: str) -> None:
    logger.info("Finished %s %s '%s'", operation, resource_type, resource_id)
