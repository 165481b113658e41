"""Exception types shared by the engine, the worker and the adapters.

Classified run results (timeouts, output overflow, compile and runtime errors) are
not exceptions; they come back as an ``ExecutionOutcome``. Everything here is an
operational fault, except ``DuplicateJobError`` which signals an idempotent re-create.
"""
from __future__ import annotations
from typing import Optional


class BoxxyError(Exception):
    """Base class for all boxxy errors."""


class ConfigError(BoxxyError):
    pass


class InvalidLimitsError(BoxxyError, ValueError):
    pass


class BackendSpawnError(BoxxyError):
    def __init__(self, backend: str, cause: BaseException):
        self.backend = backend
        self.cause = cause
        super().__init__(f"failed to start backend {backend!r}: {cause}")


class JobStoreError(BoxxyError):
    pass


class DuplicateJobError(BoxxyError):
    """A job with this id already exists. Not a failure."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job {job_id!r} already exists")


class QueueError(BoxxyError):
    pass


class InvalidJobMessage(BoxxyError, ValueError):
    def __init__(self, reason: str, job_id: Optional[str] = None):
        self.job_id = job_id
        super().__init__(reason)
