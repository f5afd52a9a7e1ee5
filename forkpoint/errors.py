"""
Forkpoint Errors - Exception taxonomy for the checkpoint store

Every error carries the addressing context (thread, namespace, checkpoint,
branch) that was in play when it was raised, so callers can diagnose a
failure without looking inside the backing store.
"""

from typing import Optional


class ForkpointError(Exception):
    """Base class for all checkpoint store errors"""

    def __init__(
        self,
        message: str,
        *,
        thread_id: Optional[str] = None,
        checkpoint_ns: Optional[str] = None,
        checkpoint_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.thread_id = thread_id
        self.checkpoint_ns = checkpoint_ns
        self.checkpoint_id = checkpoint_id
        self.branch_id = branch_id

    def __str__(self) -> str:
        context = [
            f"{name}={value!r}"
            for name, value in (
                ("thread_id", self.thread_id),
                ("checkpoint_ns", self.checkpoint_ns),
                ("checkpoint_id", self.checkpoint_id),
                ("branch_id", self.branch_id),
            )
            if value is not None
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigurationError(ForkpointError):
    """Raised when required addressing or store configuration is missing"""
    pass


class MissingCheckpointIdError(ConfigurationError):
    """Raised when pending writes are attached without a checkpoint id"""
    pass


class CheckpointNotFoundError(ForkpointError):
    """Raised when a referenced checkpoint id does not resolve"""
    pass


class ParentNotFoundError(CheckpointNotFoundError):
    """Raised when the parent of a new checkpoint does not resolve"""
    pass


class BranchNotFoundError(ForkpointError):
    """Raised when a branch id does not belong to the given thread"""
    pass


class SerializationError(ForkpointError):
    """Raised when a value cannot be encoded or decoded"""
    pass


class StoreError(ForkpointError):
    """Raised when the backing store or its transport fails"""
    pass
