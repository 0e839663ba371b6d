"""
Side output for events dropped by the transformation stage
"""

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog

from ..exceptions import DeadLetterQueueError
from ..models.events import ChangeEvent


class FilteredEventsWriter:
    """Appends filtered events as JSON lines under ``directory/YYYY/MM/DD/HH/``.

    Without a directory, filtered events are only logged.
    """

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory
        self._file_prefix = f"filtered-{uuid.uuid4().hex[:12]}"
        self._lock = threading.Lock()
        self.logger = structlog.get_logger()

    def write(self, event: ChangeEvent) -> Optional[str]:
        if not self.directory:
            self.logger.debug("Filtered event dropped", event_id=event.event_id, table=event.table)
            return None

        now = datetime.now(timezone.utc)
        target_dir = os.path.join(self.directory, now.strftime("%Y/%m/%d/%H"))
        path = os.path.join(target_dir, f"{self._file_prefix}.json")
        line = json.dumps(event.to_dict(), default=str)

        with self._lock:
            try:
                os.makedirs(target_dir, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.write("\n")
            except OSError as e:
                raise DeadLetterQueueError(f"Failed to write filtered event to {path}: {e}")
        return path
