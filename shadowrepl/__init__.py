"""
shadowrepl - ordered change-event migration into MySQL

Applies captured insert/update/delete events to a destination database through
per-row shadow tables, so out-of-order and duplicate deliveries converge to
the same final state, with a file-based dead-letter queue for failures.
"""

__version__ = "1.0.0"

from .pipeline_service import PipelineService
from .exceptions import ShadowReplError

__all__ = [
    "PipelineService",
    "ShadowReplError",
    "__version__",
]
