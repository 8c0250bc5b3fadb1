"""
Read interface to an OpenCTI instance.

The collector only ever talks to this interface, so it doesn't care
whether the other end is the real GraphQL API, the fake server, or a
stub in a test.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from opencti_exporter.metrics import ObservableRecord


ORDER_ASC = "asc"
ORDER_DESC = "desc"


class OpenCTIReader(ABC):
    """Read-only operations the exporter needs from OpenCTI."""

    @abstractmethod
    def health_check(self, timeout: Optional[float] = None) -> None:
        """Return normally when OpenCTI is healthy, raise otherwise."""
        ...

    @abstractmethod
    def list_observables(
        self,
        first: int,
        order_by: str,
        order_mode: str = ORDER_DESC,
        timeout: Optional[float] = None,
    ) -> List[ObservableRecord]:
        """Fetch up to `first` STIX cyber observables in the given order."""
        ...

    def most_recent_created(self, timeout: Optional[float] = None) -> Optional[ObservableRecord]:
        records = self.list_observables(1, "created_at", ORDER_DESC, timeout=timeout)
        return records[0] if records else None

    def most_recent_updated(self, timeout: Optional[float] = None) -> Optional[ObservableRecord]:
        records = self.list_observables(1, "updated_at", ORDER_DESC, timeout=timeout)
        return records[0] if records else None

    def name(self) -> str:
        return self.__class__.__name__

    def close(self):
        pass
