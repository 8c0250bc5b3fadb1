"""
Exception types raised by the OpenCTI client and the config layer.

The collector never lets these escape a scrape; they only reach the
caller at startup (ConfigurationError) or from the client used directly.
"""


class OpenCTIExporterError(Exception):
    """Base class for everything this package raises."""


class ConfigurationError(OpenCTIExporterError):
    """Bad URL, missing token, invalid option value."""


class OpenCTIConnectionError(OpenCTIExporterError):
    """The platform could not be reached at the transport level."""


class OpenCTITimeoutError(OpenCTIConnectionError):
    """A request ran past its deadline."""


class OpenCTIHealthError(OpenCTIExporterError):
    """The health endpoint answered, but not with a healthy status."""


class OpenCTIQueryError(OpenCTIExporterError):
    """A GraphQL query failed or returned something we can't read."""
