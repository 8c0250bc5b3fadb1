"""
Core data model for the exporter.

An ObservableRecord is what the freshness queries bring back from
OpenCTI; a ProbeResult is the outcome of one scrape, built fresh on
every call and thrown away once its samples are emitted.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


NAMESPACE = "opencti"

# Fractional seconds right before the UTC offset (or the end of the string)
_FRACTION_RE = re.compile(r"\.(\d+)(?=[+-]\d\d:?\d\d$|$)")


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with underscores, like Prometheus does."""
    return "_".join(part for part in (namespace, subsystem, name) if part)


def parse_timestamp(value: str) -> datetime:
    """Parse OpenCTI's ISO-8601 timestamps, e.g. 2025-01-16T15:45:55.316Z."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    value = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def unix_seconds(dt: datetime) -> float:
    """Whole seconds since the epoch; sub-second precision is dropped."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return float(math.floor(dt.timestamp()))


@dataclass(frozen=True)
class ObservableRecord:
    """A single STIX cyber observable as returned by OpenCTI."""

    entity_type: str
    updated_at: datetime
    created_at: Optional[datetime] = None
    id: str = ""
    observable_value: str = ""

    @classmethod
    def from_node(cls, node: dict) -> "ObservableRecord":
        try:
            entity_type = node["entity_type"]
            updated_at = parse_timestamp(node["updated_at"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"unreadable observable node: {e}") from e

        created_raw = node.get("created_at")
        return cls(
            entity_type=entity_type,
            updated_at=updated_at,
            created_at=parse_timestamp(created_raw) if created_raw else None,
            id=node.get("id") or "",
            observable_value=node.get("observable_value") or "",
        )


@dataclass
class ProbeResult:
    """Outcome of one probe sequence against OpenCTI."""

    healthy: bool = False
    last_created: Optional[ObservableRecord] = None
    last_updated: Optional[ObservableRecord] = None

    # What went wrong, if anything. Only for display; never exported.
    error: Optional[str] = None

    @property
    def up(self) -> float:
        if self.healthy and self.last_created and self.last_updated:
            return 1.0
        return 0.0

    def summary(self) -> dict:
        """Return a plain dict for display."""
        result = {"up": self.up, "healthy": self.healthy, "error": self.error}
        for key, record in (("last_created", self.last_created), ("last_updated", self.last_updated)):
            if record is None:
                result[key] = None
            else:
                result[key] = {
                    "entity_type": record.entity_type,
                    "updated_at": record.updated_at.isoformat(),
                    "timestamp_seconds": unix_seconds(record.updated_at),
                }
        return result
