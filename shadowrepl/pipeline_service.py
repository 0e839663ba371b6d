"""
Main pipeline service for shadowrepl

Wires the stages together: change events are transformed, written through the
ordering protocol and every failure is routed to the dead-letter queue. A pool
of worker threads drains a bounded queue; the dead-letter intake feeds retried
events through the same processing function.
"""

import signal
import threading
import time
from queue import Queue, Empty
from typing import Any, Dict, Iterable, List, Optional

import structlog

from .exceptions import ShadowReplError, ConfigurationError, DeadLetterQueueError
from .models.config import MigrationConfig
from .models.events import ChangeEvent, DlqEntry
from .models.writes import ProcessingOutcome
from .services.change_event_transformer import ChangeEventTransformer
from .services.config_service import ConfigService
from .services.database_service import DatabaseService
from .services.dlq_manager import DeadLetterQueueManager
from .services.filtered_events_writer import FilteredEventsWriter
from .services.metrics_endpoint import MetricsEndpoint
from .services.metrics_service import MetricsService
from .services.schema_mapper import build_schema_mapper
from .services.shadow_table_service import ShadowTableManager
from .services.transaction_writer import TransactionalWriter
from .services.transform_service import TransformService


class PipelineService:
    """Main service orchestrating the migration write pipeline"""

    def __init__(self, config: MigrationConfig, config_dir: str = None,
                 database_service: Optional[DatabaseService] = None,
                 metrics_service: Optional[MetricsService] = None,
                 queue_size: int = 10000):
        self.config = config
        self.config_dir = config_dir
        self.logger = structlog.get_logger()

        self.database_service = database_service or DatabaseService(config.destination)
        self.metrics_service = metrics_service or MetricsService()
        self.metrics_service.set_pipeline(self)
        self.metrics_service.set_database_service(self.database_service)
        self.transform_service = TransformService()

        self.transformer: Optional[ChangeEventTransformer] = None
        self.writer: Optional[TransactionalWriter] = None
        self.dlq_manager: Optional[DeadLetterQueueManager] = None
        self.filtered_writer: Optional[FilteredEventsWriter] = None
        self.metrics_endpoint: Optional[MetricsEndpoint] = None

        self._queue: Queue = Queue(maxsize=queue_size)
        self._workers: List[threading.Thread] = []
        self._shutdown_requested = threading.Event()
        self._initialized = False

        self._stats = {outcome.value: 0 for outcome in ProcessingOutcome}
        self._stats['errors'] = 0
        self._stats_lock = threading.Lock()

    @classmethod
    def from_config_file(cls, config_path: str, **kwargs) -> 'PipelineService':
        config_service = ConfigService()
        config = config_service.load_config(config_path)
        errors = config_service.validation_errors(config)
        if errors:
            raise ConfigurationError(f"Invalid configuration: {'; '.join(errors)}")
        return cls(config, config_dir=config_service.config_dir, **kwargs)

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            self.logger.info("Received signal, initiating shutdown", signal=signum)
            self.request_shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def request_shutdown(self) -> None:
        self.logger.info("Shutdown requested")
        self._shutdown_requested.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested.is_set()

    def initialize(self) -> None:
        """Setup phase; any ConfigurationError here aborts before events flow"""
        config = self.config
        schema = self.database_service.read_destination_schema(
            config.destination.database,
            exclude_prefix=config.shadow_table_prefix if config.shadow_database == config.destination.database else None
        )
        mapper = build_schema_mapper(config.schema, schema)

        shadow_tables = ShadowTableManager(
            self.database_service, config.shadow_table_prefix, config.shadow_table_database)
        if config.should_create_shadow_tables:
            shadow_tables.ensure_shadow_tables(schema)

        self.transformer = ChangeEventTransformer(
            schema_mapper=mapper,
            transformation_context=self.transform_service.load_transformation_context(
                config.transformation_context_file),
            sharding_context=self.transform_service.load_sharding_context(config.sharding_context_file),
            custom_transformation=self.transform_service.load_custom_transformation(
                config.custom_transformation, self.config_dir),
            round_json_decimals=config.round_json_decimals,
            stream_name=config.stream_name
        )
        self.writer = TransactionalWriter(
            self.database_service, shadow_tables, metrics_service=self.metrics_service)
        self.dlq_manager = DeadLetterQueueManager.from_config(config.dlq, self.metrics_service)
        self.filtered_writer = FilteredEventsWriter(config.filtered_events_directory)

        self._initialized = True
        self.logger.info("Pipeline initialized",
                         run_mode=config.run_mode.value,
                         tables=len(schema.tables),
                         workers=config.workers,
                         dlq_directory=config.dlq.directory)

    # Processing

    def process_record(self, record: Any, previous_entry: Optional[DlqEntry] = None) -> ProcessingOutcome:
        """Process one raw record; structurally malformed records go to severe"""
        if not self._initialized:
            raise ShadowReplError("Pipeline is not initialized")
        try:
            event = ChangeEvent.from_dict(record)
        except (ValueError, TypeError, KeyError) as e:
            payload = record if isinstance(record, dict) else {'raw': record}
            self.logger.warning("Malformed change record", error=str(e))
            self.metrics_service.record_event_failed("unknown", "permanent", "parse")
            self.dlq_manager.route_failure(payload, f"Malformed change record: {e}",
                                           retryable=False, previous=previous_entry)
            return self._count(ProcessingOutcome.SEVERE)
        return self.process_event(event, previous_entry)

    def process_event(self, event: ChangeEvent, previous_entry: Optional[DlqEntry] = None) -> ProcessingOutcome:
        """Run one event through transform, ordered write and failure routing"""
        if not self._initialized:
            raise ShadowReplError("Pipeline is not initialized")

        self.metrics_service.record_event_received(
            event.table, event.operation.value, "dlq" if previous_entry else "live")

        result = self.transformer.transform(event)
        if result.is_filtered:
            self.filtered_writer.write(event)
            self.metrics_service.record_event_filtered(event.table)
            return self._count(ProcessingOutcome.FILTERED)
        if result.is_error:
            self.metrics_service.record_event_failed(event.table, "permanent", "transform")
            return self._route_failure(event, result.error, False, previous_entry)

        write_result = self.writer.write(result.mutation)
        if write_result.is_applied:
            self.metrics_service.record_event_applied(result.mutation.table, event.operation.value)
            return self._count(ProcessingOutcome.APPLIED)
        if write_result.is_discarded:
            self.metrics_service.record_event_discarded(result.mutation.table)
            return self._count(ProcessingOutcome.DISCARDED)

        classification = "retryable" if write_result.is_retryable else "permanent"
        self.metrics_service.record_event_failed(result.mutation.table, classification, "write")
        return self._route_failure(event, write_result.error, write_result.is_retryable, previous_entry)

    def _route_failure(self, event: ChangeEvent, error: str, retryable: bool,
                       previous_entry: Optional[DlqEntry]) -> ProcessingOutcome:
        # Replaying the severe store must not feed the retry store
        if not self.config.is_regular_mode:
            retryable = False
        entry = self.dlq_manager.route_failure(event, error, retryable, previous_entry)
        self.logger.info("Change event routed to dead-letter queue",
                         event_id=event.event_id,
                         table=event.table,
                         queue=entry.queue.value,
                         retry_count=entry.retry_count,
                         error=error)
        return self._count(ProcessingOutcome.RETRY if retryable else ProcessingOutcome.SEVERE)

    def resubmit_entry(self, entry: DlqEntry) -> ProcessingOutcome:
        """Dead-letter callback: reprocess a stored event carrying its attempt count"""
        return self.process_record(entry.event, previous_entry=entry)

    def _count(self, outcome: ProcessingOutcome) -> ProcessingOutcome:
        with self._stats_lock:
            self._stats[outcome.value] += 1
        return outcome

    # Workers

    def submit(self, record: Any, timeout: Optional[float] = None) -> None:
        """Queue a raw record for the workers; blocks while the queue is full"""
        self._queue.put(record, timeout=timeout)
        self.metrics_service.set_work_queue_size(self._queue.qsize())

    def start(self) -> None:
        """Start workers, dead-letter intake and the metrics endpoint"""
        if not self._initialized:
            self.initialize()
        self._shutdown_requested.clear()

        if self.config.monitoring.enabled:
            self.metrics_endpoint = MetricsEndpoint(
                self.metrics_service, self.config.monitoring.host, self.config.monitoring.port)
            self.metrics_endpoint.start()

        for index in range(self.config.workers):
            worker = threading.Thread(target=self._worker_loop, name=f"worker_{index}", daemon=True)
            worker.start()
            self._workers.append(worker)
        self.metrics_service.set_active_workers(len(self._workers))

        if self.config.is_regular_mode:
            self.dlq_manager.start(self.resubmit_entry)

        self.logger.info("Pipeline started", workers=len(self._workers))

    def _worker_loop(self) -> None:
        while not self._shutdown_requested.is_set():
            try:
                record = self._queue.get(timeout=0.1)
            except Empty:
                continue

            try:
                self.process_record(record)
            except Exception as e:
                self.logger.error("Error processing change record",
                                  error=str(e),
                                  error_type=type(e).__name__,
                                  record=record)
                with self._stats_lock:
                    self._stats['errors'] += 1
            finally:
                self._queue.task_done()

    def drain(self) -> None:
        """Block until every queued record has been processed or shutdown is requested"""
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks and not self.shutdown_requested:
                self._queue.all_tasks_done.wait(timeout=0.5)

    def stop(self) -> None:
        """Stop intake and workers; in-flight transactions finish first"""
        self._shutdown_requested.set()
        if self.dlq_manager is not None:
            self.dlq_manager.stop()

        for worker in self._workers:
            worker.join(timeout=30.0)
            if worker.is_alive():
                self.logger.warning("Worker did not stop gracefully", worker=worker.name)
        self._workers = []
        self.metrics_service.set_active_workers(0)

        if self.metrics_endpoint is not None:
            self.metrics_endpoint.stop()
            self.metrics_endpoint = None

        self.database_service.close_all_connections()
        self.logger.info("Pipeline stopped", **self.get_stats())

    # Run modes

    def run(self, records: Iterable[Any], keep_running: bool = False) -> Dict[str, int]:
        """Feed ``records`` through the workers.

        With ``keep_running`` the pipeline stays up after the input is
        exhausted so the dead-letter intake keeps retrying until shutdown.
        """
        self.start()
        try:
            for record in records:
                if self.shutdown_requested:
                    break
                self.submit(record)
            if not self.shutdown_requested:
                self.drain()
            while keep_running and not self.shutdown_requested:
                time.sleep(1.0)
        finally:
            self.stop()
        return self.get_stats()

    def run_retry_only(self) -> Dict[str, int]:
        """Replay the severe store once; failures go back to severe"""
        if self.config.is_regular_mode:
            raise ConfigurationError("retry_only run requires run_mode 'retry_only'")
        if not self._initialized:
            self.initialize()
        try:
            self.dlq_manager.recover_claimed()
            self.dlq_manager.set_resubmit_callback(self.resubmit_entry)
            self.dlq_manager.replay_severe_store()
        except DeadLetterQueueError as e:
            self.logger.error("Severe store replay failed", error=str(e))
            raise
        finally:
            self.database_service.close_all_connections()
        self.logger.info("Retry-only run finished", **self.get_stats())
        return self.get_stats()

    def get_worker_count(self) -> int:
        return sum(1 for worker in self._workers if worker.is_alive())

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)
