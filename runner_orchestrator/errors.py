"""
Error taxonomy for the orchestrator.

Store failures, remote Actions service failures, and the aggregate error used
when a batch of per-runner operations partially fails.
"""

from typing import List, Optional, Sequence


class ResourceStoreError(Exception):
    """A resource store operation failed."""


class NotFoundError(ResourceStoreError):
    """The requested object does not exist (or no longer exists)."""


class ConflictError(ResourceStoreError):
    """A write targeted a stale resource version."""


class ActionsError(Exception):
    """Structured error returned by the Actions service."""

    def __init__(
        self,
        status_code: int,
        exception_name: str = "",
        message: str = "",
        activity_id: str = "",
    ):
        self.status_code = status_code
        self.exception_name = exception_name
        self.message = message
        self.activity_id = activity_id
        super().__init__(str(self))

    def __str__(self) -> str:
        parts = [f"actions error: StatusCode {self.status_code}"]
        if self.activity_id:
            parts.append(f"ActivityId \"{self.activity_id}\"")
        if self.exception_name:
            parts.append(f"{self.exception_name}: {self.message}")
        elif self.message:
            parts.append(self.message)
        return ", ".join(parts)


class ActionsClientError(Exception):
    """An Actions client could not be built for a runner set."""


class MultiError(Exception):
    """Several independent failures from one batch of operations."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors: List[BaseException] = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


def combine_errors(errors: Sequence[BaseException]) -> Optional[BaseException]:
    """
    Combine collected errors into one.

    Returns None for an empty batch, the error itself for a batch of one, and a
    MultiError otherwise. Nested MultiErrors are flattened.
    """
    flat: List[BaseException] = []
    for err in errors:
        if err is None:
            continue
        if isinstance(err, MultiError):
            flat.extend(err.errors)
        else:
            flat.append(err)

    if not flat:
        return None
    if len(flat) == 1:
        return flat[0]
    return MultiError(flat)
