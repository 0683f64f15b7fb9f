"""
Exception taxonomy for the ingestion engine.

Each class maps to one recovery policy:
- ConfigurationError: rejected at validation time, never reaches a poll cycle
- TransientSourceError: recorded in the poll log, retried on the next cycle
- CursorExpiredError: recovered inside the adapter by resetting to baseline
- SignatureVerificationError: webhook request answered with 403
- StoreUnavailableError: the durable store is gone, the engine stops
- PluginLoadError: recorded against one plugin directory, scan continues
"""


class IngestError(Exception):
    """Base class for all ingestion engine errors."""


class ConfigurationError(IngestError):
    """Invalid plugin metadata or source configuration."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class TransientSourceError(IngestError):
    """Expected failure talking to an external platform (timeout, auth, rate limit)."""


class CursorExpiredError(TransientSourceError):
    """The platform rejected a stored delta/continuation cursor."""

    def __init__(self, message: str, resource: str | None = None):
        super().__init__(message)
        self.resource = resource


class SignatureVerificationError(IngestError):
    """Inbound webhook signature did not match the configured secret."""


class StoreUnavailableError(IngestError):
    """The dedup/persistence store cannot be reached."""


class PluginLoadError(IngestError):
    """A plugin directory could not be imported or failed validation."""

    def __init__(self, path: str, errors: list[str]):
        super().__init__(f"{path}: {'; '.join(errors)}")
        self.path = path
        self.errors = errors


class SecretNotFoundError(TransientSourceError):
    """A named secret could not be resolved."""
