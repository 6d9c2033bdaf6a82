"""
Workflow engine exception hierarchy.

Every service raises one of these types; blueprints register a handler
per type once and get consistent HTTP status codes everywhere.

Propagation policy:
  - PermissionDenied / InvalidTransition / ValidationError are terminal for
    the request and never retried.
  - NotFoundError is surfaced as-is.
  - ConflictStale means the job moved underneath the caller; re-fetch and
    retry is safe.
  - DerivedAggregateFailure is logged and queued for retry; it must never
    unwind the transition that triggered it.
  - DeliveryFailure is scoped to the notification queue.

Usage:
    from jobflow.core.exceptions import NotFoundError, PermissionDenied

    raise NotFoundError(resource="Job", resource_id=42)
    raise PermissionDenied(action="update", resource="Job", resource_id=42)
"""


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""


class NotFoundError(WorkflowError):
    """Raised when a job, stage, question or principal does not exist.

    Args:
        resource: Human-readable model name (e.g. "Job", "Stage").
        resource_id: The PK that was looked up.
        tenant_id: Optional scope that was enforced. For logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class PermissionDenied(WorkflowError):
    """Raised when the access policy denies an action on a resource.

    Args:
        action: One of read / create / update / delete.
        resource: Model name of the target.
        resource_id: PK of the target (None for collection-level checks).
        reason: Short machine-friendly reason from the policy decision.
    """

    def __init__(
        self,
        action: str,
        resource: str,
        resource_id: int | str | None = None,
        reason: str | None = None,
    ) -> None:
        self.action = action
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason
        msg = f"Permission denied: {action} on {resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class InvalidTransition(WorkflowError):
    """Raised when the stage graph rejects a requested move.

    ``allowed`` carries the ids/names the caller could have chosen so the
    UI can offer them.
    """

    def __init__(
        self,
        source: str | int | None,
        target: str | int | None,
        allowed: list | None = None,
        reason: str | None = None,
    ) -> None:
        self.source = source
        self.target = target
        self.allowed = list(allowed or [])
        self.reason = reason
        msg = f"Invalid transition: {source} → {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConflictStale(WorkflowError):
    """Raised when a concurrent transition changed the job first."""

    def __init__(
        self,
        job_id: int,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.job_id = job_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Job id={job_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)


class ValidationError(WorkflowError):
    """Raised when well-formed input violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class DerivedAggregateFailure(WorkflowError):
    """Raised internally when a best-effort aggregate refresh fails."""

    def __init__(self, aggregate: str, key: int | str, cause: Exception | None = None) -> None:
        self.aggregate = aggregate
        self.key = key
        self.cause = cause
        msg = f"Failed to refresh {aggregate} id={key}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class DeliveryFailure(WorkflowError):
    """Raised by a delivery transport when a queue entry cannot be sent.

    ``retriable=False`` marks the failure as terminal (bad address, provider
    rejected the payload); the entry is failed without further retries.
    """

    def __init__(self, message: str, *, retriable: bool = True) -> None:
        self.retriable = retriable
        super().__init__(message)


class ImmutableRecordError(WorkflowError):
    """Raised when a flush would modify or delete an append-only row."""

    def __init__(self, entity_type: str, entity_id: int | None, reason: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} id={entity_id}: {reason}")
