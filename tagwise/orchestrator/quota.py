"""Quota gate for provider dispatch.

Two independent checks run before every dispatch:
1. Tier usage: the free tier is refused once a monthly counter would be
   exceeded. Paid tiers are counted but never refused.
2. Cooldown: after the provider signals a quota/rate-limit error, every
   dispatch short-circuits until the cooldown window expires.

Both states live in explicit objects that callers pass around, and both
persist through a blob store so they survive a restart.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..config.settings import settings
from ..storage.blob_store import BlobStore


LOGGER = logging.getLogger(__name__)


class Tier(Enum):
    """Subscription tiers."""

    FREE = "free"
    PRO = "pro"
    VANGUARD_PRO = "vanguard_pro"

    @property
    def is_premium(self) -> bool:
        """Paid tiers get single-shot completions and auto-filled panels."""
        return self is not Tier.FREE


class QueryKind(Enum):
    """Counted operation types."""

    TEXT = "text"
    IMAGE = "image"


class GateDecision(Enum):
    """Outcome of a pre-dispatch check."""

    ALLOWED = "allowed"
    LIMIT_REACHED = "limit_reached"
    COOLING_DOWN = "cooling_down"


@dataclass
class UsageSnapshot:
    """Current usage counters and limits."""

    tier: Tier
    text_count: int
    text_limit: int
    image_count: int
    image_limit: int

    def would_exceed(self, text_queries: int, image_queries: int) -> bool:
        """Check whether a request would push any counter past its limit."""
        if text_queries > 0 and self.text_count + text_queries > self.text_limit:
            return True
        if image_queries > 0 and self.image_count + image_queries > self.image_limit:
            return True
        return False


class UsageStore(ABC):
    """Source of usage counters."""

    @abstractmethod
    def get_usage(self) -> UsageSnapshot:
        """Get the current counters and limits."""
        pass

    @abstractmethod
    def increment_query_count(self, kind: QueryKind, count: int) -> None:
        """Add to the counter for one operation type."""
        pass


class BlobUsageStore(UsageStore):
    """Usage counters persisted in a blob store.

    Counters reset when the calendar month changes.
    """

    def __init__(
        self,
        store: BlobStore,
        tier: Tier = Tier.FREE,
        key: Optional[str] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the usage store.

        Args:
            store: Blob store holding the counters
            tier: Tier used when nothing is stored yet
            key: Storage key, defaults to settings
            now: Clock, injectable for tests
        """
        self._store = store
        self._key = key or settings.usage_key
        self._now = now
        self._default_tier = tier

    def _period(self) -> str:
        return self._now().strftime("%Y-%m")

    def _load(self) -> dict:
        raw = self._store.get(self._key)
        data = {}
        if raw is not None:
            try:
                data = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                LOGGER.error("Usage counters unreadable, resetting: %s", e)
            if not isinstance(data, dict):
                LOGGER.error("Usage counters malformed, resetting: %r", data)
                data = {}

        if data.get("period") != self._period():
            data = {
                "tier": data.get("tier", self._default_tier.value),
                "period": self._period(),
                "text_count": 0,
                "image_count": 0,
            }
        return data

    def _save(self, data: dict) -> None:
        self._store.set(self._key, json.dumps(data).encode("utf-8"))

    def get_usage(self) -> UsageSnapshot:
        data = self._load()
        tier = Tier(data.get("tier", self._default_tier.value))
        text_limit, image_limit = settings.tier_limits[tier.value]
        return UsageSnapshot(
            tier=tier,
            text_count=data.get("text_count", 0),
            text_limit=text_limit,
            image_count=data.get("image_count", 0),
            image_limit=image_limit,
        )

    def increment_query_count(self, kind: QueryKind, count: int) -> None:
        if count <= 0:
            return
        data = self._load()
        field_name = f"{kind.value}_count"
        data[field_name] = data.get(field_name, 0) + count
        self._save(data)

    def set_tier(self, tier: Tier) -> None:
        """Change the subscription tier."""
        data = self._load()
        data["tier"] = tier.value
        self._save(data)


class CooldownState:
    """Global provider cooldown with a persisted expiry.

    Arming while already active is a no-op, so there is never more than
    one expiry timer. When a loop is running the state clears itself via
    a timer; otherwise the expiry is checked lazily on every read.
    """

    def __init__(
        self,
        store: BlobStore,
        duration: Optional[float] = None,
        key: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cooldown state.

        Args:
            store: Blob store holding the expiry timestamp
            duration: Cooldown length in seconds, defaults to settings
            key: Storage key, defaults to settings
            clock: Wall clock returning epoch seconds
        """
        self._store = store
        self._duration = settings.cooldown_seconds if duration is None else duration
        self._key = key or settings.cooldown_key
        self._clock = clock
        self._expires_at: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def expires_at(self) -> Optional[float]:
        """Epoch seconds when the cooldown ends, if active."""
        return self._expires_at if self.is_active else None

    @property
    def is_active(self) -> bool:
        """Whether dispatches should currently short-circuit."""
        if self._expires_at is None:
            return False
        if self._clock() < self._expires_at:
            return True
        self.clear()
        return False

    @property
    def remaining(self) -> float:
        """Seconds left in the cooldown (0 if inactive)."""
        if not self.is_active:
            return 0.0
        return max(0.0, self._expires_at - self._clock())

    def restore(self) -> bool:
        """Reload a persisted cooldown, e.g. after a restart.

        Returns:
            True if a still-active cooldown was restored
        """
        raw = self._store.get(self._key)
        if raw is None:
            return False

        try:
            expires_at = float(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            LOGGER.warning("Ignoring unreadable cooldown expiry %r", raw)
            self._store.delete(self._key)
            return False

        if self._clock() >= expires_at:
            self._store.delete(self._key)
            return False

        self._expires_at = expires_at
        self._start_timer(expires_at - self._clock())
        return True

    def arm(self) -> bool:
        """Start the cooldown window.

        Returns:
            True if armed, False if a cooldown was already active
        """
        if self.is_active:
            return False

        self._expires_at = self._clock() + self._duration
        self._store.set(self._key, repr(self._expires_at).encode("utf-8"))
        self._start_timer(self._duration)
        LOGGER.info("Provider cooldown armed for %.0f seconds", self._duration)
        return True

    def clear(self) -> None:
        """End the cooldown now."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._expires_at is not None:
            self._expires_at = None
            self._store.delete(self._key)
            LOGGER.info("Provider cooldown cleared")

    def _start_timer(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(max(0.0, delay), self.clear)


class QuotaGate:
    """Pre-dispatch check combining tier usage and the provider cooldown."""

    def __init__(self, usage: UsageStore, cooldown: CooldownState) -> None:
        """Initialize the gate.

        Args:
            usage: Usage counter source
            cooldown: Shared cooldown state
        """
        self._usage = usage
        self._cooldown = cooldown

    @property
    def usage(self) -> UsageStore:
        """Get the usage store."""
        return self._usage

    @property
    def cooldown(self) -> CooldownState:
        """Get the cooldown state."""
        return self._cooldown

    @property
    def tier(self) -> Tier:
        """Get the current tier."""
        return self._usage.get_usage().tier

    def check(self, text_queries: int, image_queries: int) -> GateDecision:
        """Decide whether a dispatch may proceed.

        Args:
            text_queries: Text operations requested (0 or 1)
            image_queries: Number of images attached

        Returns:
            GateDecision for the request
        """
        if self._cooldown.is_active:
            return GateDecision.COOLING_DOWN

        usage = self._usage.get_usage()
        if usage.tier is Tier.FREE and usage.would_exceed(text_queries, image_queries):
            return GateDecision.LIMIT_REACHED

        return GateDecision.ALLOWED

    def record(self, text_queries: int, image_queries: int) -> None:
        """Count a dispatched request."""
        self._usage.increment_query_count(QueryKind.TEXT, text_queries)
        self._usage.increment_query_count(QueryKind.IMAGE, image_queries)

    def provider_quota_exceeded(self) -> bool:
        """Arm the cooldown after a provider quota signal.

        Returns:
            True if the cooldown was newly armed
        """
        return self._cooldown.arm()
