"""
Write outcome models for shadowrepl
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .events import Mutation


class WriteStatus(Enum):
    """Outcome of one ordered write"""
    APPLIED = "applied"
    DISCARDED = "discarded"
    RETRYABLE_ERROR = "retryable_error"
    PERMANENT_ERROR = "permanent_error"


@dataclass
class WriteResult:
    """Result of applying a mutation through the shadow-table protocol"""
    status: WriteStatus
    mutation: Mutation
    error: Optional[str] = None
    error_code: Optional[int] = None

    @property
    def is_applied(self) -> bool:
        return self.status == WriteStatus.APPLIED

    @property
    def is_discarded(self) -> bool:
        return self.status == WriteStatus.DISCARDED

    @property
    def is_failure(self) -> bool:
        return self.status in (WriteStatus.RETRYABLE_ERROR, WriteStatus.PERMANENT_ERROR)

    @property
    def is_retryable(self) -> bool:
        return self.status == WriteStatus.RETRYABLE_ERROR


class ProcessingOutcome(Enum):
    """Where one change event ended up after a pass through the pipeline"""
    APPLIED = "applied"
    DISCARDED = "discarded"
    FILTERED = "filtered"
    RETRY = "retry"
    SEVERE = "severe"
