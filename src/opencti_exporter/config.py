"""
Exporter settings. The CLI fills these from options, each of which can
also come from an environment variable (see main.py).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from opencti_exporter.errors import ConfigurationError


LOG_LEVELS = ("debug", "info", "warning", "error")

DEFAULT_OPENCTI_URL = "http://opencti:8080"
DEFAULT_PORT = 10031
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_SCRAPE_TIMEOUT = 10.0


@dataclass
class ExporterConfig:
    opencti_token: str
    opencti_url: str = DEFAULT_OPENCTI_URL
    port: int = DEFAULT_PORT
    listen_address: str = ""
    log_level: str = "info"
    metrics_subsystem: str = ""
    metrics_path: str = DEFAULT_METRICS_PATH
    scrape_timeout: float = DEFAULT_SCRAPE_TIMEOUT
    health_access_key: Optional[str] = None
    verify_tls: bool = True

    def validate(self) -> "ExporterConfig":
        if not self.opencti_token:
            raise ConfigurationError("OPENCTI_TOKEN is required")
        if not self.metrics_path.startswith("/"):
            raise ConfigurationError(f"metrics path must start with '/', got {self.metrics_path!r}")
        if self.scrape_timeout <= 0:
            raise ConfigurationError(f"scrape timeout must be positive, got {self.scrape_timeout}")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"port out of range: {self.port}")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigurationError(
                f"unknown log level {self.log_level!r}, expected one of {', '.join(LOG_LEVELS)}"
            )
        return self
