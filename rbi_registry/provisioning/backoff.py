"""
Bounded exponential backoff for identity-provider visibility.

Right after signup the provider's admin API may not return the new
account yet (replication lag). The visibility probe is retried a bounded
number of times at growing delays; the total wait is capped so a request
thread is never parked for long. No database session may be open while
waiting here.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable

from rbi_registry.core.errors import (
    IdentityProviderError,
    ProvisioningRetryable,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Attempt budget and delay schedule for one visibility wait."""

    max_attempts: int = 6
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 4.0
    max_total_wait: float = 15.0
    jitter: float = 0.0  # fraction of each delay added at random

    @classmethod
    def from_settings(cls, settings: Any) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.visibility_max_attempts,
            initial_delay=settings.visibility_initial_delay,
            multiplier=settings.visibility_backoff_multiplier,
            max_delay=settings.visibility_max_delay,
            max_total_wait=settings.visibility_max_total_wait,
        )

    def delays(self) -> list[float]:
        """
        Sleep durations between consecutive attempts (``max_attempts - 1`` at most).

        Defaults give 0.5, 1, 2, 4, 4 seconds: 11.5s over six attempts.
        """
        delays: list[float] = []
        total = 0.0
        delay = self.initial_delay
        for _ in range(max(self.max_attempts - 1, 0)):
            step = min(delay, self.max_delay)
            if total + step > self.max_total_wait:
                step = self.max_total_wait - total
                if step <= 0:
                    break
            delays.append(step)
            total += step
            delay *= self.multiplier
        return delays


def wait_until_visible(
    probe: Callable[[str], bool],
    identity_id: str,
    policy: BackoffPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Poll ``probe(identity_id)`` until it returns True.

    Transport errors from the provider count as "not visible yet".
    ``IdentityGone`` raised by the probe propagates unchanged.

    Returns:
        The number of attempts it took.

    Raises:
        ProvisioningRetryable: the identity never became visible within budget.
    """
    delays = policy.delays()
    attempts = 0
    last_error = "identity not visible"
    for attempt in range(len(delays) + 1):
        attempts = attempt + 1
        try:
            if probe(identity_id):
                if attempts > 1:
                    logger.info("Identity %s visible after %d attempts", identity_id, attempts)
                return attempts
            last_error = "identity not visible"
        except IdentityProviderError as exc:
            last_error = f"identity provider error: {exc}"
            logger.warning("Visibility probe for %s failed: %s", identity_id, exc)

        if attempt < len(delays):
            delay = delays[attempt]
            if policy.jitter:
                delay += random.uniform(0, delay * policy.jitter)
            logger.debug(
                "Identity %s not visible (attempt %d/%d); retrying in %.2fs",
                identity_id, attempts, len(delays) + 1, delay,
            )
            sleep(delay)

    raise ProvisioningRetryable(identity_id, last_error, attempts=attempts)
