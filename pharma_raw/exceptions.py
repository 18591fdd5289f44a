class PharmaRawError(RuntimeError):
    """Base class for ingestion errors."""


class ConfigError(PharmaRawError):
    """Raised when a configuration value cannot be used."""


class TransportError(PharmaRawError):
    """Raised when a page cannot be fetched (network, timeout, non-2xx status, non-JSON body)."""


class StorageError(PharmaRawError):
    """Raised when provisioning, an upsert or a run-record write fails."""


class MalformedPageError(PharmaRawError):
    """Raised when a response lacks the records collection. Degraded to an empty page by the fetcher."""
