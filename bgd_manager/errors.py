"""
Error taxonomy for bgd-manager.

Every failure that crosses a component boundary is raised as a BGDError
carrying one of a closed set of codes and an operator-facing suggestion.
"""

from enum import Enum
from typing import Any, Dict, Optional

import httpx
from docker.errors import DockerException


class ErrorCode(str, Enum):
    """Closed set of failure categories."""

    MISSING_PARAMETER = "missing_parameter"
    INVALID_PARAMETER = "invalid_parameter"
    PORT_CONFLICT = "port_conflict"
    ENVIRONMENT_START_FAILED = "environment_start_failed"
    HEALTH_CHECK_FAILED = "health_check_failed"
    DATABASE_ERROR = "database_error"
    DOCKER_ERROR = "docker_error"
    NETWORK_ERROR = "network_error"
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


DEFAULT_SUGGESTIONS: Dict[ErrorCode, str] = {
    ErrorCode.MISSING_PARAMETER: "Check the command usage and supply all required flags.",
    ErrorCode.INVALID_PARAMETER: "Check the parameter values and try again.",
    ErrorCode.PORT_CONFLICT: (
        "Choose distinct ports or enable --auto-port-assignment to pick free ones."
    ),
    ErrorCode.ENVIRONMENT_START_FAILED: (
        "Inspect the slot logs with 'docker compose logs' and check the compose files."
    ),
    ErrorCode.HEALTH_CHECK_FAILED: (
        "Verify the application starts correctly and the health endpoint responds."
    ),
    ErrorCode.DATABASE_ERROR: "Check database connectivity and the migrations command.",
    ErrorCode.DOCKER_ERROR: "Ensure the Docker daemon is running: docker info",
    ErrorCode.NETWORK_ERROR: "Check network connectivity and proxy configuration.",
    ErrorCode.FILE_NOT_FOUND: "Ensure the referenced file exists and the path is correct.",
    ErrorCode.PERMISSION_DENIED: "Check file permissions or run with sufficient privileges.",
    ErrorCode.UNKNOWN: "Check bgd.log for details.",
}


class BGDError(Exception):
    """Failure with a taxonomy code and a human-readable suggestion."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.suggestion = suggestion or DEFAULT_SUGGESTIONS[code]
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for event logs and hook payloads."""
        return {
            "code": self.code.value,
            "message": self.message,
            "suggestion": self.suggestion,
            "details": self.details,
        }


def from_exception(exc: BaseException, context: str = "") -> BGDError:
    """
    Translate an arbitrary exception into a BGDError.

    Args:
        exc: Exception raised by a lower layer
        context: Short description of what was being attempted

    Returns:
        BGDError with the closest matching code
    """
    if isinstance(exc, BGDError):
        return exc

    prefix = f"{context}: " if context else ""
    if isinstance(exc, FileNotFoundError):
        return BGDError(ErrorCode.FILE_NOT_FOUND, f"{prefix}{exc}")
    if isinstance(exc, PermissionError):
        return BGDError(ErrorCode.PERMISSION_DENIED, f"{prefix}{exc}")
    if isinstance(exc, DockerException):
        return BGDError(ErrorCode.DOCKER_ERROR, f"{prefix}{exc}")
    if isinstance(exc, httpx.HTTPError):
        return BGDError(ErrorCode.NETWORK_ERROR, f"{prefix}{exc}")
    return BGDError(ErrorCode.UNKNOWN, f"{prefix}{exc}")
