"""
Node Commander — Error Taxonomy
═══════════════════════════════════════════════════
  ConfigError            → bad request fields, never retried       (400)
  RuntimeGatewayError    → a container runtime call failed          (500)
    ContainerNotFoundError   runtime says: no such container        (404)
    ContainerConflictError   name already taken                     (409)
  TransientNetworkError  → retried with backoff, then surfaced
  DownloadError          → permanent script download failure
  WorkloadBusyError      → another transition is in flight          (409)
  AuthError              → telemetry auth failed, channel closed
"""

from typing import Optional


class NodeCommanderError(Exception):
    """Base class for all daemon errors."""
    status_code = 500


class ConfigError(NodeCommanderError):
    status_code = 400


class RuntimeGatewayError(NodeCommanderError):
    """A container runtime call failed. `cause` keeps the original exception."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class ContainerNotFoundError(RuntimeGatewayError):
    status_code = 404


class ContainerConflictError(RuntimeGatewayError):
    status_code = 409


class TransientNetworkError(NodeCommanderError):
    status_code = 503


class DownloadError(NodeCommanderError):
    status_code = 502


class WorkloadBusyError(NodeCommanderError):
    status_code = 409


class AuthError(NodeCommanderError):
    status_code = 401
