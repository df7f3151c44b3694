"""Error taxonomy shared by the store, workflow engine, service and surfaces."""
from __future__ import annotations


class StageGateError(Exception):
    """Base class for every domain failure. ``code`` is stable across releases."""

    code = "unknown"
    status_code = 500
    default_message = "Failed to process the request."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidInput(StageGateError):
    code = "invalid-input"
    status_code = 400
    default_message = "Invalid initiative data."


class NotFound(StageGateError):
    code = "not-found"
    status_code = 404
    default_message = "Initiative not found."


class ApprovalNotFound(StageGateError):
    code = "approval-not-found"
    status_code = 404
    default_message = "Approval request not found."


class WorkstreamNotFound(StageGateError):
    code = "workstream-not-found"
    status_code = 404
    default_message = "Workstream configuration missing."


class VersionConflict(StageGateError):
    code = "version-conflict"
    status_code = 409
    default_message = "Initiative was updated elsewhere."


class Forbidden(StageGateError):
    code = "forbidden"
    status_code = 403
    default_message = "You cannot act on this approval."


class MissingApprovers(StageGateError):
    code = "missing-approvers"
    status_code = 422
    default_message = "Assign approvers before progressing."


class DuplicateId(StageGateError):
    code = "duplicate-id"
    status_code = 409
    default_message = "Initiative id already exists."


class StorageError(StageGateError):
    """Storage fault. Not retried by the store; ``retryable`` tells the caller whether it may."""

    code = "storage-error"
    default_message = "Storage failure."

    def __init__(self, message: str | None = None, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = 503 if retryable else 500
