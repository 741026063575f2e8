"""Helius API key pool with round-robin rotation and rate-limit cooldowns."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Any, List, Optional

from .errors import CredentialsExhausted

logger = logging.getLogger(__name__)


def mask_key(key: str) -> str:
    """Mask an API key for log output."""
    return f"{key[:8]}..." if len(key) > 8 else "***"


@dataclass
class Credential:
    """One provider API key and its usage counters."""
    key: str
    call_count: int = 0
    last_rotated: float = 0.0
    cooldown_until: float = 0.0

    def is_cooling(self, now: float) -> bool:
        return now < self.cooldown_until

    @property
    def masked(self) -> str:
        return mask_key(self.key)


class CredentialPool:
    """
    Round-robin pool of provider API keys.

    Rotation policy:
    - Proactive: after ``max_calls_per_rotation`` calls or
      ``rotation_interval_seconds`` on the active key, whichever comes first
    - Reactive: a rate-limited key is put in cooldown and the pool advances
      to the next key that is not cooling down
    - All keys cooling: ``active_credential()`` raises CredentialsExhausted
    """

    def __init__(
        self,
        keys: List[str],
        max_calls_per_rotation: int = 100,
        rotation_interval_seconds: float = 900.0,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.time
    ):
        if not keys:
            raise ValueError("CredentialPool requires at least one API key")
        if max_calls_per_rotation < 1:
            raise ValueError("max_calls_per_rotation must be at least 1")

        self.max_calls_per_rotation = max_calls_per_rotation
        self.rotation_interval_seconds = rotation_interval_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        now = clock()
        self._credentials = [Credential(key=key, last_rotated=now) for key in keys]
        self._index = 0

        self.stats = {
            'rotations': 0,
            'rate_limit_rotations': 0,
            'exhausted_errors': 0
        }

        logger.info(
            f"CredentialPool initialized: {len(keys)} keys, "
            f"threshold={max_calls_per_rotation} calls, interval={rotation_interval_seconds}s"
        )

    @property
    def active(self) -> Credential:
        """Currently selected credential, without any rotation checks."""
        return self._credentials[self._index]

    @property
    def is_exhausted(self) -> bool:
        now = self._clock()
        return all(cred.is_cooling(now) for cred in self._credentials)

    def active_credential(self) -> Credential:
        """
        Return the credential to use for the next provider call.

        Applies proactive rotation first. Raises CredentialsExhausted when every
        key is cooling down rather than waiting for one to recover.
        """
        now = self._clock()
        current = self.active

        if current.call_count >= self.max_calls_per_rotation:
            self.rotate("call threshold reached")
        elif now - current.last_rotated >= self.rotation_interval_seconds:
            self.rotate("rotation interval elapsed")

        current = self.active
        if current.is_cooling(now):
            self._advance(now)
            current = self.active

        if current.is_cooling(now):
            self.stats['exhausted_errors'] += 1
            retry_at = min(cred.cooldown_until for cred in self._credentials)
            raise CredentialsExhausted(retry_at=retry_at)

        return current

    def seconds_until_available(self) -> float:
        """Seconds until the earliest cooling key recovers, 0 if one is usable now."""
        now = self._clock()
        if any(not cred.is_cooling(now) for cred in self._credentials):
            return 0.0
        return max(min(cred.cooldown_until for cred in self._credentials) - now, 0.0)

    def record_call(self):
        """Count one provider call against the active credential."""
        self.active.call_count += 1

    def rotate(self, reason: str, cooldown: bool = False, credential: Optional[Credential] = None):
        """
        Advance to the next usable credential.

        When ``cooldown`` is set the failing credential (``credential`` or the
        active one) is put in cooldown. If ``credential`` is given and is no
        longer active, another call site already rotated past it, so only its
        cooldown is recorded.
        """
        now = self._clock()
        target = credential if credential is not None else self.active

        if cooldown:
            target.cooldown_until = now + self.cooldown_seconds
            self.stats['rate_limit_rotations'] += 1
            logger.warning(f"API key {target.masked} rate limited, cooling down for {self.cooldown_seconds}s")

        if target is not self.active:
            logger.debug(f"Skipping rotation for {target.masked}: no longer active")
            return

        previous = self.active
        self._advance(now)
        if self.active is previous:
            # Single usable key: start a fresh window on the same key
            previous.call_count = 0
            previous.last_rotated = now

        self.stats['rotations'] += 1
        logger.info(f"Rotated API key {previous.masked} -> {self.active.masked} ({reason})")

    def _advance(self, now: float):
        """Move to the next credential that is not cooling down."""
        count = len(self._credentials)
        for step in range(1, count + 1):
            index = (self._index + step) % count
            candidate = self._credentials[index]
            if not candidate.is_cooling(now):
                self._index = index
                candidate.call_count = 0
                candidate.last_rotated = now
                return

    def status(self) -> Dict[str, Any]:
        """Pool status for health reporting."""
        now = self._clock()
        available = sum(1 for cred in self._credentials if not cred.is_cooling(now))
        return {
            **self.stats,
            'total_keys': len(self._credentials),
            'available_keys': available,
            'active_key': self.active.masked,
            'active_calls': self.active.call_count,
            'degraded': available == 0
        }
