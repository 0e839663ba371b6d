"""
Metrics service for Prometheus monitoring
Provides counters and timings for the migration write pipeline
"""

import time
from typing import Dict, Any, Optional
from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    CollectorRegistry, generate_latest,
    CONTENT_TYPE_LATEST
)
import structlog


class MetricsService:
    """Service for managing Prometheus metrics"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.logger = structlog.get_logger()
        self.registry = registry or CollectorRegistry()
        self.pipeline = None  # Will be set later
        self.database_service = None  # Will be set later
        self._start_time = time.time()

        self._init_metrics()

        self.logger.info("Metrics service initialized")

    def set_pipeline(self, pipeline) -> None:
        """Set pipeline reference for health checks"""
        self.pipeline = pipeline

    def set_database_service(self, database_service) -> None:
        """Set database service reference for health checks"""
        self.database_service = database_service

    def _init_metrics(self) -> None:
        """Initialize all Prometheus metrics"""

        # === EVENT METRICS ===
        self.events_received_total = Counter(
            'shadowrepl_events_received_total',
            'Total number of change events received',
            ['table_name', 'operation_type', 'origin'],
            registry=self.registry
        )

        self.events_applied_total = Counter(
            'shadowrepl_events_applied_total',
            'Total number of change events applied to the destination',
            ['table_name', 'operation_type'],
            registry=self.registry
        )

        # Stale or duplicate deliveries
        self.events_discarded_total = Counter(
            'shadowrepl_events_discarded_total',
            'Total number of change events discarded by the ordering guard',
            ['table_name'],
            registry=self.registry
        )

        self.events_filtered_total = Counter(
            'shadowrepl_events_filtered_total',
            'Total number of change events filtered by the transformation stage',
            ['table_name'],
            registry=self.registry
        )

        self.events_failed_total = Counter(
            'shadowrepl_events_failed_total',
            'Total number of change events that failed',
            ['table_name', 'classification', 'stage'],
            registry=self.registry
        )

        # === WRITE METRICS ===
        self.write_duration = Histogram(
            'shadowrepl_write_duration_seconds',
            'Time spent in one ordered write transaction',
            ['table_name'],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )

        # === DLQ METRICS ===
        self.dlq_entries_written_total = Counter(
            'shadowrepl_dlq_entries_written_total',
            'Total number of entries written to the dead-letter queue',
            ['queue'],
            registry=self.registry
        )

        self.dlq_entries_reconsumed_total = Counter(
            'shadowrepl_dlq_entries_reconsumed_total',
            'Total number of dead-letter entries taken up again',
            ['outcome'],
            registry=self.registry
        )

        # === QUEUE METRICS ===
        self.work_queue_size = Gauge(
            'shadowrepl_work_queue_size',
            'Current size of the worker queue',
            registry=self.registry
        )

        self.active_workers = Gauge(
            'shadowrepl_active_workers',
            'Number of running worker threads',
            registry=self.registry
        )

        # === SYSTEM METRICS ===
        self.system_info = Info(
            'shadowrepl_system',
            'System information',
            registry=self.registry
        )

        self.system_uptime = Gauge(
            'shadowrepl_uptime_seconds',
            'System uptime in seconds',
            registry=self.registry
        )

    def get_metrics(self) -> str:
        """Get metrics in Prometheus format"""
        return generate_latest(self.registry).decode('utf-8')

    def get_content_type(self) -> str:
        """Get content type for metrics"""
        return CONTENT_TYPE_LATEST

    def record_event_received(self, table_name: str, operation_type: str, origin: str = "live") -> None:
        self.events_received_total.labels(
            table_name=table_name,
            operation_type=operation_type,
            origin=origin
        ).inc()

    def record_event_applied(self, table_name: str, operation_type: str) -> None:
        self.events_applied_total.labels(table_name=table_name, operation_type=operation_type).inc()

    def record_event_discarded(self, table_name: str) -> None:
        self.events_discarded_total.labels(table_name=table_name).inc()

    def record_event_filtered(self, table_name: str) -> None:
        self.events_filtered_total.labels(table_name=table_name).inc()

    def record_event_failed(self, table_name: str, classification: str, stage: str) -> None:
        self.events_failed_total.labels(
            table_name=table_name,
            classification=classification,
            stage=stage
        ).inc()

    def record_write_duration(self, table_name: str, duration: float) -> None:
        self.write_duration.labels(table_name=table_name).observe(duration)

    def record_dlq_write(self, queue: str, count: int = 1) -> None:
        self.dlq_entries_written_total.labels(queue=queue).inc(count)

    def record_dlq_reconsume(self, outcome: str) -> None:
        self.dlq_entries_reconsumed_total.labels(outcome=outcome).inc()

    def set_work_queue_size(self, size: int) -> None:
        self.work_queue_size.set(size)

    def set_active_workers(self, count: int) -> None:
        self.active_workers.set(count)

    def set_system_info(self, version: str, build_date: str) -> None:
        self.system_info.info({'version': version, 'build_date': build_date})

    def set_system_uptime(self, uptime_seconds: float) -> None:
        self.system_uptime.set(uptime_seconds)

    def get_health_status(self) -> Dict[str, Any]:
        """Overall health: running workers and a reachable destination"""
        components: Dict[str, Any] = {}

        if self.pipeline is not None:
            workers = self.pipeline.get_worker_count()
            components["workers"] = {
                "status": "healthy" if workers > 0 else "warning",
                "count": workers
            }

        if self.database_service is not None:
            connected = self.database_service.test_connection()
            components["destination"] = {"status": "healthy" if connected else "error"}

        return {
            "status": self._determine_overall_status(components),
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "components": components
        }

    def _determine_overall_status(self, components: Dict[str, Any]) -> str:
        """Determine overall system status based on component health"""
        statuses = [component.get("status", "unknown") for component in components.values()]
        if "error" in statuses:
            return "unhealthy"
        if "warning" in statuses:
            return "warning"
        return "healthy"
