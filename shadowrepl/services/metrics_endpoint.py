"""
Monitoring HTTP endpoint

Serves the Prometheus exposition on /metrics and a JSON liveness report
on /health. Runs on a daemon thread beside the pipeline workers.
"""

import json
import threading
import time
from functools import partial
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Callable, Dict, Optional, Tuple

import structlog

from .. import __version__
from .metrics_service import MetricsService

# (status, content type, body)
Response = Tuple[int, str, bytes]

SERVING_STATUSES = ("healthy", "warning")


class MonitoringRequestHandler(BaseHTTPRequestHandler):
    """Routes GET requests to the metrics service"""

    def __init__(self, metrics_service: MetricsService, started_at: float, *args, **kwargs):
        self.metrics_service = metrics_service
        self.started_at = started_at
        self.logger = structlog.get_logger()
        super().__init__(*args, **kwargs)

    @property
    def routes(self) -> Dict[str, Callable[[], Response]]:
        return {
            '/metrics': self._scrape,
            '/health': self._health,
        }

    def do_GET(self):
        route = self.routes.get(self.path.split('?', 1)[0])
        if route is None:
            self._reply(404, 'text/plain', b'Not Found')
            return

        try:
            status, content_type, body = route()
        except Exception as e:
            self.logger.error("Monitoring request failed", path=self.path, error=str(e))
            status, content_type, body = 500, 'text/plain', b'Internal Server Error'
        self._reply(status, content_type, body)

    def _scrape(self) -> Response:
        self.metrics_service.set_system_uptime(time.time() - self.started_at)
        exposition = self.metrics_service.get_metrics()
        return 200, self.metrics_service.get_content_type(), exposition.encode('utf-8')

    def _health(self) -> Response:
        report = self.metrics_service.get_health_status()
        status = 200 if report["status"] in SERVING_STATUSES else 503
        return status, 'application/json', json.dumps(report, indent=2, default=str).encode('utf-8')

    def _reply(self, status: int, content_type: str, body: bytes) -> None:
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        self.logger.debug("Monitoring request", client=self.client_address[0], line=format % args)


class MetricsEndpoint:
    """Owns the monitoring HTTP server and its serving thread"""

    def __init__(self, metrics_service: MetricsService, host: str = '0.0.0.0', port: int = 8080):
        self.metrics_service = metrics_service
        self.host = host
        self.port = port
        self.logger = structlog.get_logger()

        self._httpd: Optional[HTTPServer] = None
        self._serving_thread: Optional[threading.Thread] = None
        self._started_at = time.time()

    def start(self) -> None:
        if self.is_running():
            self.logger.warning("Monitoring endpoint already running", url=self.get_url())
            return

        handler = partial(MonitoringRequestHandler, self.metrics_service, self._started_at)
        self._httpd = HTTPServer((self.host, self.port), handler)
        # Port 0 binds an ephemeral port
        self.port = self._httpd.server_address[1]

        self.metrics_service.set_system_info(
            version=__version__,
            build_date=time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self._started_at))
        )

        self._serving_thread = threading.Thread(
            target=self._httpd.serve_forever,
            kwargs={"poll_interval": 0.5},
            name="monitoring_endpoint",
            daemon=True,
        )
        self._serving_thread.start()
        self.logger.info("Monitoring endpoint listening",
                         metrics_url=self.get_url(),
                         health_url=self.get_health_url())

    def stop(self) -> None:
        if self._httpd is None:
            return

        self._httpd.shutdown()
        self._httpd.server_close()
        if self._serving_thread is not None:
            self._serving_thread.join(timeout=5.0)
            if self._serving_thread.is_alive():
                self.logger.warning("Monitoring endpoint thread did not exit")
        self._httpd = None
        self.logger.info("Monitoring endpoint stopped")

    def is_running(self) -> bool:
        return self._serving_thread is not None and self._serving_thread.is_alive()

    def get_url(self) -> str:
        return f"http://{self.host}:{self.port}/metrics"

    def get_health_url(self) -> str:
        return f"http://{self.host}:{self.port}/health"
