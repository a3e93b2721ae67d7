"""Quota Controller — admission control over outbound model calls.

Tracks a time-ordered call history per quota identity (an API key, or the
shared free bucket when no key is set) and refuses calls once a
requests-per-minute, requests-per-day or tokens-per-minute ceiling is
reached. The controller never sleeps or retries; backing off is the
caller's job.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable

from pydantic import BaseModel

from selforge.types import AIMode, QuotaIdentity

FREE_IDENTITY: QuotaIdentity = "FREE_MODE_KEY"

MINUTE = 60.0
DAY = 24 * 60 * 60.0


class QuotaLimits(BaseModel):
    rpm: int
    rpd: int | None = None  # None = unbounded
    tpm: int | None = None


class QuotaDecision(BaseModel):
    allowed: bool
    reason: str | None = None


class UsageStats(BaseModel):
    rpm: int
    rpd: int
    tpm: int = 0


class _Call(BaseModel):
    at: float
    tokens: int = 0


class QuotaController:
    """Sliding-window rate limiter keyed by quota identity."""

    def __init__(
        self,
        free_limits: QuotaLimits,
        paid_limits: QuotaLimits,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._free = free_limits
        self._paid = paid_limits
        self._clock = clock
        self._histories: dict[QuotaIdentity, list[_Call]] = defaultdict(list)

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> QuotaController:
        return cls(
            free_limits=QuotaLimits(
                rpm=settings.free_rpm, rpd=settings.free_rpd, tpm=settings.free_tpm
            ),
            paid_limits=QuotaLimits(
                rpm=settings.paid_rpm, rpd=settings.paid_rpd, tpm=settings.paid_tpm
            ),
            clock=clock,
        )

    @staticmethod
    def identity_for(mode: AIMode, api_key: str | None) -> QuotaIdentity | None:
        """Map an operating mode and credential to the bucket it is billed to."""
        if mode == AIMode.FREE:
            return FREE_IDENTITY
        return api_key or None

    def limits_for(self, identity: QuotaIdentity) -> QuotaLimits:
        return self._free if identity == FREE_IDENTITY else self._paid

    def check_quota(self, identity: QuotaIdentity | None, calls: int = 1) -> QuotaDecision:
        """Whether `calls` more requests fit under every ceiling right now."""
        if not identity:
            return QuotaDecision(allowed=False, reason="API key is missing for paid mode.")

        limits = self.limits_for(identity)
        stats = self.get_usage_stats(identity)

        if stats.rpm + calls > limits.rpm:
            return QuotaDecision(allowed=False, reason="RPM limit exceeded.")
        if limits.rpd is not None and stats.rpd + calls > limits.rpd:
            return QuotaDecision(allowed=False, reason="RPD limit exceeded.")
        if limits.tpm is not None and stats.tpm >= limits.tpm:
            return QuotaDecision(allowed=False, reason="TPM limit exceeded.")
        return QuotaDecision(allowed=True)

    def record_call(self, identity: QuotaIdentity, token_cost: int = 0) -> None:
        now = self._clock()
        history = self._histories[identity]
        history.append(_Call(at=now, tokens=token_cost))
        # Prune to the trailing day so history stays bounded
        cutoff = now - DAY
        self._histories[identity] = [c for c in history if c.at > cutoff]

    def get_usage_stats(self, identity: QuotaIdentity) -> UsageStats:
        now = self._clock()
        minute_ago = now - MINUTE
        day_ago = now - DAY
        history = self._histories.get(identity, [])
        recent = [c for c in history if c.at > minute_ago]
        return UsageStats(
            rpm=len(recent),
            rpd=sum(1 for c in history if c.at > day_ago),
            tpm=sum(c.tokens for c in recent),
        )
