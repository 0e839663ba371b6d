"""
Dead-letter queue for shadowrepl

Failed change events are stored as JSON-lines files under two trees:

    <directory>/retry/YYYY/MM/DD/HH/<uuid>.json    retryable failures
    <directory>/severe/YYYY/MM/DD/HH/<uuid>.json   permanent failures, exhausted retries

Files are written into ``tmp_retry`` / ``tmp_severe`` first and renamed into
place, so a reader never sees a partial file. A file is claimed for
reconsumption by renaming it to ``*.claimed`` and deleted once every entry in
it has been routed again.
"""

import json
import os
import queue
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Any, List, Optional

import structlog
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..exceptions import DeadLetterQueueError
from ..models.config import DlqConfig, DlqIntakeMode
from ..models.events import DlqEntry, DlqQueue
from .metrics_service import MetricsService


ENTRY_FILE_SUFFIX = ".json"
TEMP_SUFFIX = ".temp"
CLAIMED_SUFFIX = ".claimed"

# Paths never taken up by the notification intake
IGNORED_PATH_MARKERS = ("/severe/", "/tmp_retry/", "/tmp_severe/", TEMP_SUFFIX, CLAIMED_SUFFIX)

ResubmitCallback = Callable[[DlqEntry], None]


class RetryFileHandler(FileSystemEventHandler):
    """Queues retry files as they appear in the retry tree"""

    def __init__(self, manager: 'DeadLetterQueueManager'):
        self.manager = manager

    def on_created(self, event):
        if not event.is_directory:
            self.manager.notify(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self.manager.notify(event.dest_path)


def is_consumable_path(path: str) -> bool:
    """True for finished retry files, False for temp, claimed and severe files"""
    normalized = path.replace(os.sep, "/")
    if any(marker in normalized for marker in IGNORED_PATH_MARKERS):
        return False
    return normalized.endswith(ENTRY_FILE_SUFFIX)


class DeadLetterQueueManager:
    """File-based retry and severe stores with bounded reconsumption"""

    def __init__(self, directory: str, max_retry_count: int = 500,
                 retry_interval_seconds: float = 600.0,
                 intake: DlqIntakeMode = DlqIntakeMode.POLLING,
                 metrics_service: Optional[MetricsService] = None):
        self.directory = directory
        self.retry_dir = os.path.join(directory, "retry")
        self.severe_dir = os.path.join(directory, "severe")
        self.tmp_retry_dir = os.path.join(directory, "tmp_retry")
        self.tmp_severe_dir = os.path.join(directory, "tmp_severe")
        self.max_retry_count = max_retry_count
        self.retry_interval_seconds = retry_interval_seconds
        self.intake = intake
        self.metrics_service = metrics_service
        self.logger = structlog.get_logger()

        self._resubmit: Optional[ResubmitCallback] = None
        self._stop_event = threading.Event()
        self._intake_thread: Optional[threading.Thread] = None
        self._observer: Optional[Observer] = None
        self._pending: "queue.PriorityQueue" = queue.PriorityQueue()

        self.ensure_directories()

    @classmethod
    def from_config(cls, config: DlqConfig,
                    metrics_service: Optional[MetricsService] = None) -> 'DeadLetterQueueManager':
        return cls(
            directory=config.directory,
            max_retry_count=config.max_retry_count,
            retry_interval_seconds=config.retry_interval_seconds,
            intake=config.intake,
            metrics_service=metrics_service
        )

    def ensure_directories(self) -> None:
        try:
            for path in (self.retry_dir, self.severe_dir, self.tmp_retry_dir, self.tmp_severe_dir):
                os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise DeadLetterQueueError(f"Cannot create dead-letter directories under {self.directory}: {e}")

    # Writing

    def write_retryable(self, entries: List[DlqEntry]) -> Optional[str]:
        return self._write(entries, DlqQueue.RETRYABLE)

    def write_severe(self, entries: List[DlqEntry]) -> Optional[str]:
        return self._write(entries, DlqQueue.SEVERE)

    def route_failure(self, event: Any, error_message: str, retryable: bool,
                      previous: Optional[DlqEntry] = None) -> DlqEntry:
        """Store one failed event in the queue matching its classification"""
        entry = DlqEntry.from_failure(event, error_message, retryable, previous)
        self._write([entry], entry.queue)
        return entry

    def _write(self, entries: List[DlqEntry], dlq_queue: DlqQueue) -> Optional[str]:
        if not entries:
            return None
        if dlq_queue == DlqQueue.RETRYABLE:
            tmp_dir, final_root = self.tmp_retry_dir, self.retry_dir
        else:
            tmp_dir, final_root = self.tmp_severe_dir, self.severe_dir

        file_name = f"{uuid.uuid4().hex}{ENTRY_FILE_SUFFIX}"
        final_dir = os.path.join(final_root, datetime.now(timezone.utc).strftime("%Y/%m/%d/%H"))
        tmp_path = os.path.join(tmp_dir, file_name + TEMP_SUFFIX)
        final_path = os.path.join(final_dir, file_name)

        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                for entry in entries:
                    entry.queue = dlq_queue
                    f.write(json.dumps(entry.to_dict(), default=str))
                    f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.makedirs(final_dir, exist_ok=True)
            os.replace(tmp_path, final_path)
        except OSError as e:
            raise DeadLetterQueueError(f"Failed to write dead-letter file {final_path}: {e}")

        if self.metrics_service:
            self.metrics_service.record_dlq_write(dlq_queue.value, len(entries))
        self.logger.info("Wrote dead-letter entries",
                         queue=dlq_queue.value,
                         count=len(entries),
                         path=final_path)
        return final_path

    # Reading

    def list_files(self, dlq_queue: DlqQueue = DlqQueue.RETRYABLE,
                   older_than_seconds: Optional[float] = None) -> List[str]:
        """Unclaimed entry files of a queue, oldest path first"""
        root = self.retry_dir if dlq_queue == DlqQueue.RETRYABLE else self.severe_dir
        now = time.time()
        files = []
        for dirpath, _, filenames in os.walk(root):
            for filename in filenames:
                if not filename.endswith(ENTRY_FILE_SUFFIX):
                    continue
                path = os.path.join(dirpath, filename)
                if older_than_seconds is not None:
                    try:
                        if now - os.path.getmtime(path) < older_than_seconds:
                            continue
                    except FileNotFoundError:
                        continue
                files.append(path)
        return sorted(files)

    def read_entries(self, path: str) -> List[DlqEntry]:
        """Parse a JSON-lines entry file; unreadable lines become severe entries"""
        entries = []
        with open(path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(DlqEntry.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    self.logger.error("Unreadable dead-letter entry",
                                      path=path, line=line_number, error=str(e))
                    entries.append(DlqEntry(
                        event={'raw': line},
                        error_message=f"Unreadable dead-letter entry: {e}",
                        queue=DlqQueue.SEVERE
                    ))
        return entries

    def claim(self, path: str) -> Optional[str]:
        """Rename a file to its claimed name; None if another consumer got it first"""
        claimed_path = path + CLAIMED_SUFFIX
        try:
            os.rename(path, claimed_path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise DeadLetterQueueError(f"Failed to claim dead-letter file {path}: {e}")
        return claimed_path

    def recover_claimed(self) -> int:
        """Release files left claimed by an interrupted run"""
        recovered = 0
        for root in (self.retry_dir, self.severe_dir):
            for dirpath, _, filenames in os.walk(root):
                for filename in filenames:
                    if filename.endswith(CLAIMED_SUFFIX):
                        path = os.path.join(dirpath, filename)
                        os.replace(path, path[:-len(CLAIMED_SUFFIX)])
                        recovered += 1
        if recovered:
            self.logger.warning("Recovered claimed dead-letter files", count=recovered)
        return recovered

    def release(self, claimed_path: str) -> None:
        """Give a claimed file back to its queue, due again after a full retry interval"""
        path = claimed_path[:-len(CLAIMED_SUFFIX)]
        try:
            os.utime(claimed_path, None)
            os.replace(claimed_path, path)
        except OSError as e:
            self.logger.error("Could not release claimed dead-letter file",
                              path=claimed_path, error=str(e))
            return
        self.logger.warning("Released claimed dead-letter file", path=path)

    def _finish(self, claimed_path: str, exhausted: List[DlqEntry],
                unfinished: Optional[List[DlqEntry]] = None,
                unfinished_queue: DlqQueue = DlqQueue.RETRYABLE) -> None:
        """Store what a pass produced and drop the claimed file.

        If the stores cannot be written the claimed file is released instead,
        so none of its entries is lost; entries already resubmitted are then
        delivered again and discarded by the ordering guard.
        """
        try:
            self.write_severe(exhausted)
            if unfinished:
                self._write(unfinished, unfinished_queue)
            os.remove(claimed_path)
        except (DeadLetterQueueError, OSError) as e:
            self.logger.error("Could not store dead-letter pass results",
                              path=claimed_path, error=str(e))
            self.release(claimed_path)
            raise DeadLetterQueueError(f"Dead-letter file {claimed_path} was released: {e}") from e

    def _read_claimed(self, claimed_path: str) -> List[DlqEntry]:
        try:
            return self.read_entries(claimed_path)
        except OSError as e:
            self.release(claimed_path)
            raise DeadLetterQueueError(f"Failed to read dead-letter file {claimed_path}: {e}") from e

    # Reconsumption

    def set_resubmit_callback(self, resubmit: ResubmitCallback) -> None:
        self._resubmit = resubmit

    def reconsume_file(self, path: str) -> Dict[str, int]:
        """Take every entry of a retry file up again.

        Each entry's retry count is incremented; entries past
        ``max_retry_count`` go to the severe store, the rest are handed to the
        resubmit callback, which routes any new failure back with the
        incremented count. When routing fails part way, the entries not yet
        handed off go back to the retry store.
        """
        stats = {"resubmitted": 0, "exhausted": 0, "unreadable": 0}
        if self._resubmit is None:
            raise DeadLetterQueueError("No resubmit callback configured")

        claimed_path = self.claim(path)
        if claimed_path is None:
            return stats
        entries = self._read_claimed(claimed_path)

        exhausted = []
        for index, entry in enumerate(entries):
            if 'raw' in entry.event:
                exhausted.append(entry)
                stats["unreadable"] += 1
                continue

            entry.retry_count += 1
            if entry.retry_count > self.max_retry_count:
                entry.error_message = (f"Retry limit {self.max_retry_count} exceeded, "
                                       f"last error: {entry.error_message}")
                exhausted.append(entry)
                stats["exhausted"] += 1
                self._record_reconsume("exhausted")
                continue

            try:
                self._resubmit_entry(entry)
            except (DeadLetterQueueError, OSError) as e:
                self.logger.error("Dead-letter pass interrupted",
                                  path=path, remaining=len(entries) - index, error=str(e))
                self._finish(claimed_path, exhausted, entries[index:])
                raise DeadLetterQueueError(f"Reconsumption of {path} interrupted: {e}") from e
            stats["resubmitted"] += 1
            self._record_reconsume("resubmitted")

        self._finish(claimed_path, exhausted)
        self.logger.info("Reconsumed dead-letter file", path=path, **stats)
        return stats

    def _resubmit_entry(self, entry: DlqEntry) -> None:
        try:
            self._resubmit(entry)
        except Exception as e:
            self.logger.error("Resubmission of dead-letter entry failed",
                              entry_id=entry.entry_id, error=str(e))
            self.route_failure(entry.event, str(e), retryable=True, previous=entry)

    def reconsume_retry_store(self, older_than_seconds: Optional[float] = None) -> int:
        """Reconsume every eligible retry file; returns the number of files taken up"""
        files = self.list_files(DlqQueue.RETRYABLE, older_than_seconds)
        consumed = 0
        for path in files:
            if self._stop_event.is_set():
                break
            if os.path.exists(path):
                self.reconsume_file(path)
                consumed += 1
        return consumed

    def replay_severe_store(self) -> Dict[str, int]:
        """Replay each severe entry once; failures are routed by the callback"""
        if self._resubmit is None:
            raise DeadLetterQueueError("No resubmit callback configured")

        stats = {"files": 0, "replayed": 0}
        for path in self.list_files(DlqQueue.SEVERE):
            if self._stop_event.is_set():
                break
            claimed_path = self.claim(path)
            if claimed_path is None:
                continue
            entries = self._read_claimed(claimed_path)

            unreadable = []
            for index, entry in enumerate(entries):
                if 'raw' in entry.event:
                    unreadable.append(entry)
                    continue
                entry.retry_count += 1
                try:
                    self._resubmit_entry(entry)
                except (DeadLetterQueueError, OSError) as e:
                    self._finish(claimed_path, unreadable, entries[index:], DlqQueue.SEVERE)
                    raise DeadLetterQueueError(f"Replay of {path} interrupted: {e}") from e
                stats["replayed"] += 1
                self._record_reconsume("replayed")
            self._finish(claimed_path, unreadable)
            stats["files"] += 1

        self.logger.info("Replayed severe dead-letter store", **stats)
        return stats

    def _record_reconsume(self, outcome: str) -> None:
        if self.metrics_service:
            self.metrics_service.record_dlq_reconsume(outcome)

    # Intake

    def start(self, resubmit: ResubmitCallback) -> None:
        """Recover claimed files and start the configured intake"""
        self.set_resubmit_callback(resubmit)
        self._stop_event.clear()
        self.recover_claimed()

        if self.intake == DlqIntakeMode.NOTIFICATION:
            self._observer = Observer()
            self._observer.schedule(RetryFileHandler(self), self.retry_dir, recursive=True)
            self._observer.start()
            for path in self.list_files(DlqQueue.RETRYABLE):
                self.notify(path)
            target = self._notification_loop
        else:
            target = self._polling_loop

        self._intake_thread = threading.Thread(target=target, name="dlq_intake", daemon=True)
        self._intake_thread.start()
        self.logger.info("Dead-letter intake started",
                         intake=self.intake.value,
                         directory=self.directory,
                         retry_interval_seconds=self.retry_interval_seconds)

    def notify(self, path: str) -> None:
        """Schedule a retry file for consumption once its retry interval has passed"""
        if not is_consumable_path(path):
            return
        try:
            due = os.path.getmtime(path) + self.retry_interval_seconds
        except FileNotFoundError:
            return
        self._pending.put((due, path))

    def _polling_loop(self) -> None:
        while not self._stop_event.wait(self.retry_interval_seconds):
            try:
                self.reconsume_retry_store(older_than_seconds=self.retry_interval_seconds)
            except (DeadLetterQueueError, OSError) as e:
                self.logger.error("Dead-letter polling pass failed", error=str(e))

    def _notification_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                due, path = self._pending.get(timeout=1.0)
            except queue.Empty:
                continue

            delay = due - time.time()
            if delay > 0:
                self._pending.put((due, path))
                self._stop_event.wait(min(delay, 1.0))
                continue

            if not os.path.exists(path):
                continue
            try:
                self.reconsume_file(path)
            except (DeadLetterQueueError, OSError) as e:
                self.logger.error("Dead-letter notification consumption failed", path=path, error=str(e))

    def stop(self) -> None:
        self._stop_event.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
        if self._intake_thread is not None and self._intake_thread.is_alive():
            self._intake_thread.join(timeout=10.0)
            if self._intake_thread.is_alive():
                self.logger.warning("Dead-letter intake thread did not stop gracefully")
        self._intake_thread = None
        self.logger.info("Dead-letter intake stopped")
