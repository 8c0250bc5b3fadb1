"""
HTTP side of the exporter: serves the registry (Prometheus text or
OpenMetrics, optionally gzipped) on the metrics path, and a small
landing page on `/`.
"""

from __future__ import annotations

import gzip
import html
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional, Type

from prometheus_client import CollectorRegistry, Info
from prometheus_client.exposition import choose_encoder

from opencti_exporter import __version__
from opencti_exporter.collector.opencti_collector import OpenCTICollector


log = logging.getLogger(__name__)

EXPORTER_NAME = "opencti_exporter"

LANDING_PAGE = """<!DOCTYPE html>
<html>
<head><title>OpenCTI Exporter</title></head>
<body>
<h1>OpenCTI Exporter</h1>
<p>Prometheus Exporter for OpenCTI</p>
<p>Version: {version}</p>
<ul><li><a href="{metrics_path}">Metrics</a></li></ul>
</body>
</html>
"""


def build_registry(collector: OpenCTICollector) -> CollectorRegistry:
    """A registry with just our collector and the build info series."""
    registry = CollectorRegistry(auto_describe=True)
    build_info = Info(EXPORTER_NAME + "_build", "A metric with a constant '1' value labeled by version.",
                      registry=registry)
    build_info.info({"version": __version__})
    registry.register(collector)
    return registry


def make_handler(registry: CollectorRegistry, metrics_path: str = "/metrics") -> Type[BaseHTTPRequestHandler]:
    landing = LANDING_PAGE.format(
        version=html.escape(__version__),
        metrics_path=html.escape(metrics_path, quote=True),
    ).encode()

    class _ExporterHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            path = self.path.split("?", 1)[0]

            if path == metrics_path:
                self._send_metrics()
            elif path == "/":
                self._send(200, "text/html; charset=utf-8", landing)
            else:
                self._send(404, "text/plain; charset=utf-8", b"Not Found\n")

        def _send_metrics(self):
            # Text format or OpenMetrics, depending on what the scraper accepts
            encoder, content_type = choose_encoder(self.headers.get("Accept"))
            body = encoder(registry)

            encoding = None
            if "gzip" in (self.headers.get("Accept-Encoding") or ""):
                body = gzip.compress(body)
                encoding = "gzip"
            self._send(200, content_type, body, encoding)

        def _send(self, status: int, content_type: str, body: bytes, encoding: Optional[str] = None):
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            if encoding:
                self.send_header("Content-Encoding", encoding)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            log.debug("%s - %s", self.address_string(), format % args)

    return _ExporterHandler


def make_server(
    registry: CollectorRegistry,
    host: str = "",
    port: int = 10031,
    metrics_path: str = "/metrics",
) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), make_handler(registry, metrics_path))
    server.daemon_threads = True
    return server
