"""Tests for the quota controller."""

from selforge.config import SelforgeSettings
from selforge.quota.controller import FREE_IDENTITY, QuotaController, QuotaLimits
from selforge.types import AIMode


def _controller(clock, rpm=3, rpd=None, tpm=None):
    limits = QuotaLimits(rpm=rpm, rpd=rpd, tpm=tpm)
    return QuotaController(free_limits=limits, paid_limits=QuotaLimits(rpm=2), clock=clock)


def test_allows_until_rpm_reached(clock):
    quota = _controller(clock, rpm=3)
    for _ in range(3):
        assert quota.check_quota(FREE_IDENTITY).allowed
        quota.record_call(FREE_IDENTITY)
    decision = quota.check_quota(FREE_IDENTITY)
    assert not decision.allowed
    assert "RPM" in decision.reason


def test_window_slides_after_a_minute(clock):
    quota = _controller(clock, rpm=3)
    for _ in range(3):
        quota.record_call(FREE_IDENTITY)
    assert not quota.check_quota(FREE_IDENTITY).allowed
    clock.advance(61)
    assert quota.check_quota(FREE_IDENTITY).allowed


def test_daily_ceiling(clock):
    quota = _controller(clock, rpm=100, rpd=5)
    for _ in range(5):
        quota.record_call(FREE_IDENTITY)
        clock.advance(120)
    decision = quota.check_quota(FREE_IDENTITY)
    assert not decision.allowed
    assert "RPD" in decision.reason
    clock.advance(24 * 3600)
    assert quota.check_quota(FREE_IDENTITY).allowed


def test_token_ceiling(clock):
    quota = _controller(clock, rpm=100, tpm=5000)
    quota.record_call(FREE_IDENTITY, token_cost=3000)
    assert quota.check_quota(FREE_IDENTITY).allowed
    quota.record_call(FREE_IDENTITY, token_cost=2500)
    decision = quota.check_quota(FREE_IDENTITY)
    assert not decision.allowed
    assert "TPM" in decision.reason


def test_usage_stats(clock):
    quota = _controller(clock, rpm=100)
    quota.record_call(FREE_IDENTITY, token_cost=100)
    clock.advance(90)
    quota.record_call(FREE_IDENTITY, token_cost=50)
    stats = quota.get_usage_stats(FREE_IDENTITY)
    assert stats.rpm == 1
    assert stats.rpd == 2
    assert stats.tpm == 50


def test_check_does_not_record(clock):
    quota = _controller(clock)
    for _ in range(10):
        quota.check_quota(FREE_IDENTITY)
    assert quota.get_usage_stats(FREE_IDENTITY).rpm == 0


def test_identities_are_independent(clock):
    quota = _controller(clock, rpm=3)
    quota.record_call("key-a")
    quota.record_call("key-a")
    assert not quota.check_quota("key-a").allowed  # paid limit is 2
    assert quota.check_quota("key-b").allowed
    assert quota.check_quota(FREE_IDENTITY).allowed


def test_missing_paid_key_denied(clock):
    quota = _controller(clock)
    identity = QuotaController.identity_for(AIMode.PAID, "")
    assert identity is None
    decision = quota.check_quota(identity)
    assert not decision.allowed
    assert "API key is missing" in decision.reason


def test_identity_for_modes():
    assert QuotaController.identity_for(AIMode.FREE, "sk-123") == FREE_IDENTITY
    assert QuotaController.identity_for(AIMode.PAID, "sk-123") == "sk-123"


def test_history_pruned_to_a_day(clock):
    quota = _controller(clock, rpm=100)
    quota.record_call(FREE_IDENTITY)
    clock.advance(25 * 3600)
    quota.record_call(FREE_IDENTITY)
    assert len(quota._histories[FREE_IDENTITY]) == 1


def test_from_settings_uses_tier_limits(clock):
    cfg = SelforgeSettings(free_rpm=7, free_rpd=70, paid_rpm=2, paid_rpd=None)
    quota = QuotaController.from_settings(cfg, clock=clock)
    assert quota.limits_for(FREE_IDENTITY).rpm == 7
    assert quota.limits_for(FREE_IDENTITY).rpd == 70
    assert quota.limits_for("sk-paid").rpm == 2
    assert quota.limits_for("sk-paid").rpd is None


def test_batch_must_fit_under_rpm(clock):
    quota = _controller(clock, rpm=5)
    for _ in range(2):
        quota.record_call(FREE_IDENTITY)
    assert quota.check_quota(FREE_IDENTITY, calls=3).allowed
    quota.record_call(FREE_IDENTITY)
    decision = quota.check_quota(FREE_IDENTITY, calls=3)
    assert not decision.allowed
    assert "RPM" in decision.reason
    assert quota.check_quota(FREE_IDENTITY, calls=2).allowed
