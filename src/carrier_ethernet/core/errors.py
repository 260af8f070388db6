"""
Error taxonomy.

We separate error types so callers can react correctly.
Example:
ValidationError should block before any resource is reserved.
ResourceConflictError means somebody else still holds the resource.
BackendFailure means the network may be partially programmed and rollback ran.
TranslationError never reaches the orchestration core.
"""


class OrchestratorError(Exception):
    """Base class for all orchestrator exceptions."""


class ValidationError(OrchestratorError):
    """Raised when a request violates type, role, topology or admission rules."""


class ResourceConflictError(OrchestratorError):
    """Raised when a resource is still referenced, already present or in the wrong phase."""


class BackendFailure(OrchestratorError):
    """Raised when the packet node backend rejects, fails or times out."""


class TranslationError(OrchestratorError):
    """Raised when an external payload cannot be decoded into a service request."""
