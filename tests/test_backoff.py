"""
Tests for the identity visibility backoff.

Validates:
- The default delay schedule stays inside the total wait cap
- Retries stop as soon as the identity is visible
- Exhaustion is retryable, a removed identity is not
"""

from __future__ import annotations

import pytest

from rbi_registry.config import RegistrySettings
from rbi_registry.core.errors import (
    IdentityGone,
    IdentityProviderError,
    ProvisioningRetryable,
)
from rbi_registry.provisioning.backoff import BackoffPolicy, wait_until_visible


class FlakyProbe:
    """Reports the identity invisible for the first ``misses`` calls."""

    def __init__(self, misses: int, error: Exception | None = None) -> None:
        self.misses = misses
        self.error = error
        self.calls = 0

    def __call__(self, identity_id: str) -> bool:
        self.calls += 1
        if self.calls <= self.misses:
            if self.error is not None:
                raise self.error
            return False
        return True


class TestBackoffPolicy:
    def test_default_schedule(self):
        assert BackoffPolicy().delays() == [0.5, 1.0, 2.0, 4.0, 4.0]

    def test_total_wait_capped(self):
        policy = BackoffPolicy(max_attempts=10, initial_delay=2.0, max_delay=8.0, max_total_wait=15.0)
        delays = policy.delays()
        assert sum(delays) == pytest.approx(15.0)
        assert len(delays) <= 9

    def test_single_attempt_never_sleeps(self):
        assert BackoffPolicy(max_attempts=1).delays() == []

    def test_from_settings(self):
        config = RegistrySettings(visibility_max_attempts=3, visibility_initial_delay=0.1)
        policy = BackoffPolicy.from_settings(config)
        assert policy.delays() == [0.1, 0.2]


class TestWaitUntilVisible:
    def setup_method(self):
        self.sleeps: list[float] = []

    def test_visible_immediately(self):
        attempts = wait_until_visible(FlakyProbe(0), "u1", BackoffPolicy(), sleep=self.sleeps.append)
        assert attempts == 1
        assert self.sleeps == []

    def test_visible_after_lag(self):
        probe = FlakyProbe(3)
        attempts = wait_until_visible(probe, "u1", BackoffPolicy(), sleep=self.sleeps.append)
        assert attempts == 4
        assert self.sleeps == [0.5, 1.0, 2.0]

    def test_provider_errors_count_as_not_visible(self):
        probe = FlakyProbe(2, error=IdentityProviderError("503"))
        assert wait_until_visible(probe, "u1", BackoffPolicy(), sleep=self.sleeps.append) == 3

    def test_exhaustion_is_retryable(self):
        probe = FlakyProbe(100)
        with pytest.raises(ProvisioningRetryable) as exc_info:
            wait_until_visible(probe, "u1", BackoffPolicy(), sleep=self.sleeps.append)
        assert exc_info.value.attempts == 6
        assert probe.calls == 6
        assert sum(self.sleeps) <= 15.0

    def test_gone_identity_propagates(self):
        probe = FlakyProbe(1, error=IdentityGone("u1"))
        with pytest.raises(IdentityGone):
            wait_until_visible(probe, "u1", BackoffPolicy(), sleep=self.sleeps.append)
        assert self.sleeps == []
