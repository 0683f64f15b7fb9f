"""
Base adapter interface and shared functionality for platform adapters.

Each plugin exports an Adapter subclass implementing poll() and test().
The base class provides:
- Rate limiting
- A configured retrying HTTP client
- Optional realtime / reply / send hooks with safe defaults
- Common text utilities
"""

import asyncio
import hashlib
import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from src.config.settings import get_settings
from src.ingestion.errors import ConfigurationError
from src.ingestion.http_client import HTTPClient, RetryConfig
from src.ingestion.schemas import (
    IngestItem,
    PollResult,
    SendResult,
    TestResult,
    ThreadReplies,
    TrackedThread,
    ValidationResult,
)

logger = logging.getLogger(__name__)

GetSecret = Callable[[str], Awaitable[str]]


@dataclass
class RateLimiter:
    """
    Simple token bucket rate limiter.

    Allows `rate` requests per minute with burst capacity.
    """

    rate: int  # requests per minute
    _tokens: float = field(init=False)
    _last_update: float = field(init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self) -> None:
        self._tokens = float(self.rate)
        self._last_update = time.monotonic()

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now

            self._tokens = min(
                float(self.rate),
                self._tokens + elapsed * (self.rate / 60.0),
            )

            if self._tokens < 1:
                wait_time = (1 - self._tokens) * 60.0 / self.rate
                logger.debug(f"Rate limited, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                self._tokens = 0
            else:
                self._tokens -= 1


@dataclass
class RealtimeCallbacks:
    """
    Hooks a realtime adapter invokes once connected.

    ``on_items`` is None when the source runs in poll mode; the adapter then
    buffers pushed items until the next ``poll`` drains them.
    """

    on_items: Callable[[list[IngestItem]], Awaitable[None]] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_disconnect: Callable[[str], None] | None = None


class BaseAdapter(ABC):
    """
    Abstract base class for platform adapters.

    Subclasses must implement:
        - type: plugin type id
        - poll(): fetch new items since the given state
        - test(): perform a real connectivity check without touching state

    Optional extensions:
        - poll_replies(): replies for tracked threads
        - connect()/disconnect(): realtime listener lifecycle
        - send(): post a message back to the platform

    Adapter instances live for the whole engine run, one per source, so
    caches and listeners kept on the instance survive between cycles.
    """

    type: ClassVar[str] = ""
    supports_realtime: ClassVar[bool] = False
    supports_send: ClassVar[bool] = False

    def __init__(self, rate_limit: int = 60):
        """
        Initialize adapter with rate limiting.

        Args:
            rate_limit: Maximum requests per minute
        """
        self._rate_limiter = RateLimiter(rate=rate_limit)

    @property
    def name(self) -> str:
        """Human-readable adapter name."""
        return f"{self.type}_adapter"

    def http_client(self, timeout: float | None = None) -> HTTPClient:
        """Build the retrying HTTP client with configured limits."""
        settings = get_settings()
        return HTTPClient(
            RetryConfig(
                max_retries=settings.max_http_retries,
                max_backoff_seconds=settings.max_http_backoff_seconds,
            ),
            timeout=timeout or settings.http_timeout_seconds,
        )

    def validate(self, source: Any) -> ValidationResult:
        """Synchronous adapter-specific config checks. No network calls."""
        return ValidationResult(valid=True)

    @abstractmethod
    async def poll(
        self,
        source: Any,
        state: dict[str, Any],
        get_secret: GetSecret,
    ) -> PollResult:
        """
        Fetch items newer than ``state``.

        Must be safe to call repeatedly with the same state: items already
        seen may be returned again and are dropped by the dedup store.

        Raises:
            TransientSourceError: for expected platform failures
        """
        ...

    @abstractmethod
    async def test(self, source: Any, get_secret: GetSecret) -> TestResult:
        """Check credentials and connectivity, returning a few sample items."""
        ...

    async def poll_replies(
        self,
        source: Any,
        threads: list[TrackedThread],
        get_secret: GetSecret,
    ) -> list[ThreadReplies]:
        return []

    async def connect(
        self,
        source: Any,
        get_secret: GetSecret,
        callbacks: RealtimeCallbacks,
    ) -> None:
        raise NotImplementedError(f"{self.type} does not support realtime")

    async def disconnect(self) -> None:
        return None

    async def send(
        self,
        source: Any,
        target: str,
        message: str,
        get_secret: GetSecret,
        thread_id: str | None = None,
    ) -> SendResult:
        """Post ``message`` to ``target`` (channel, chat or user id)."""
        raise NotImplementedError(f"{self.type} does not support send")

    def required_setting(self, source: Any, key: str) -> Any:
        value = source.settings.get(key)
        if value in (None, ""):
            raise ConfigurationError(f'{source.id}: missing required setting "{key}"')
        return value


# Common preprocessing utilities used across adapters


def clean_text(text: str) -> str:
    """
    Clean text content by removing excessive whitespace and normalizing.

    Args:
        text: Raw text content

    Returns:
        Cleaned text
    """
    text = " ".join(text.split())

    # Remove null bytes and other control characters
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)

    return text.strip()


def truncate(text: str, length: int = 120) -> str:
    """First line of ``text`` cut to ``length`` characters, used for titles."""
    first_line = text.strip().split("\n", 1)[0]
    if len(first_line) <= length:
        return first_line
    return first_line[: length - 3].rstrip() + "..."


def stable_hash(value: str) -> str:
    """
    Generate a stable, deterministic hash from a string.

    Uses SHA256 truncated to 16 hex characters (64 bits) for a compact but
    collision-resistant ID. Unlike Python's built-in hash(), this is
    deterministic across process restarts and Python versions.

    Args:
        value: String to hash (typically a URL or identifier)

    Returns:
        16-character hex string (e.g., "a1b2c3d4e5f67890")
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]
