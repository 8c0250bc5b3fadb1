"""
Prometheus collector for OpenCTI. Every scrape runs a health check and
two freshness queries (most recently created and most recently updated
observable), strictly one after the other, and turns the outcome into
three gauges.

Anything that goes wrong during a scrape is logged and reported as
`up 0` with no freshness gauges; nothing is raised to the registry.
"""

from __future__ import annotations

import logging
import time
from typing import Iterator, List, Optional, Union

from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from opencti_exporter.client.base import OpenCTIReader
from opencti_exporter.client.opencti_client import OpenCTIClient
from opencti_exporter.errors import OpenCTITimeoutError
from opencti_exporter.metrics import NAMESPACE, ProbeResult, build_fq_name, unix_seconds


log = logging.getLogger(__name__)

ENTITY_TYPE_LABEL = "entity_type"

UP_HELP = "Whether OpenCTI is up."
LAST_CREATED_HELP = "Timestamp of the last creation in OpenCTI by entity type."
LAST_UPDATED_HELP = "Timestamp of the last update in OpenCTI by entity type."

Logger = Union[logging.Logger, logging.LoggerAdapter]


class OpenCTICollector(Collector):

    def __init__(
        self,
        client: OpenCTIReader,
        subsystem: str = "",
        logger: Optional[Logger] = None,
        timeout_seconds: Optional[float] = 10.0,
    ):
        self._client = client
        self._logger = logger if logger is not None else log
        self._timeout = timeout_seconds

        self.up_name = build_fq_name(NAMESPACE, subsystem, "up")
        self.last_created_name = build_fq_name(NAMESPACE, subsystem, "last_created_timestamp_seconds")
        self.last_updated_name = build_fq_name(NAMESPACE, subsystem, "last_updated_timestamp_seconds")

    @classmethod
    def from_url(
        cls,
        url: str,
        token: str,
        subsystem: str = "",
        logger: Optional[Logger] = None,
        timeout_seconds: Optional[float] = 10.0,
        **client_options,
    ) -> "OpenCTICollector":
        """Build the HTTP client too. Raises ConfigurationError on a bad URL or token."""
        client = OpenCTIClient(url, token, **client_options)
        return cls(client, subsystem=subsystem, logger=logger, timeout_seconds=timeout_seconds)

    @property
    def client(self) -> OpenCTIReader:
        return self._client

    def _up_family(self, value: Optional[float] = None) -> GaugeMetricFamily:
        return GaugeMetricFamily(self.up_name, UP_HELP, value=value)

    def _last_created_family(self) -> GaugeMetricFamily:
        return GaugeMetricFamily(self.last_created_name, LAST_CREATED_HELP, labels=[ENTITY_TYPE_LABEL])

    def _last_updated_family(self) -> GaugeMetricFamily:
        return GaugeMetricFamily(self.last_updated_name, LAST_UPDATED_HELP, labels=[ENTITY_TYPE_LABEL])

    def describe(self) -> List[GaugeMetricFamily]:
        """The three metric shapes, without samples. Safe to call anytime."""
        return [self._up_family(), self._last_created_family(), self._last_updated_family()]

    def probe(self, timeout_seconds: Optional[float] = None) -> ProbeResult:
        """Run the health check and both freshness queries.

        `timeout_seconds` bounds the whole sequence (falls back to the
        value given at construction). Each remote call gets whatever is
        left of it; running out counts as a failed step.
        """
        budget = self._timeout if timeout_seconds is None else timeout_seconds
        deadline = None if budget is None else time.monotonic() + budget

        def remaining() -> Optional[float]:
            if deadline is None:
                return None
            left = deadline - time.monotonic()
            if left <= 0:
                raise OpenCTITimeoutError("scrape deadline exceeded")
            return left

        result = ProbeResult()
        logger = self._logger

        try:
            self._client.health_check(timeout=remaining())
        except Exception as e:
            logger.error("Health check failed: %s", e)
            result.error = f"health check failed: {e}"
            return result

        logger.debug("Health check successful")
        result.healthy = True

        try:
            created = self._client.most_recent_created(timeout=remaining())
        except Exception as e:
            logger.error("Retrieving last created StixCyberObservables: %s", e)
            result.error = f"retrieving last created observable: {e}"
            return result

        if created is None:
            logger.error("No last created StixCyberObservable retrieved")
            result.error = "no last created observable retrieved"
            return result

        logger.debug("Last StixCyberObservable created: %r", created)

        try:
            updated = self._client.most_recent_updated(timeout=remaining())
        except Exception as e:
            logger.error("Retrieving last updated StixCyberObservables: %s", e)
            result.error = f"retrieving last updated observable: {e}"
            return result

        if updated is None:
            logger.error("No last updated StixCyberObservable retrieved")
            result.error = "no last updated observable retrieved"
            return result

        logger.debug("Last StixCyberObservable updated: %r", updated)

        result.last_created = created
        result.last_updated = updated
        return result

    def collect(self, timeout_seconds: Optional[float] = None) -> Iterator[GaugeMetricFamily]:
        """Probe OpenCTI and yield the freshness gauges (only if fully up) and `up`."""
        result = self.probe(timeout_seconds)

        if result.up:
            last_created = self._last_created_family()
            last_created.add_metric(
                [result.last_created.entity_type],
                unix_seconds(result.last_created.updated_at),
            )
            yield last_created

            last_updated = self._last_updated_family()
            last_updated.add_metric(
                [result.last_updated.entity_type],
                unix_seconds(result.last_updated.updated_at),
            )
            yield last_updated

        yield self._up_family(result.up)

    def close(self):
        self._client.close()
