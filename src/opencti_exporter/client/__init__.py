from opencti_exporter.client.base import ORDER_ASC, ORDER_DESC, OpenCTIReader
from opencti_exporter.client.opencti_client import OpenCTIClient

__all__ = ["ORDER_ASC", "ORDER_DESC", "OpenCTIClient", "OpenCTIReader"]
