# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Exponential backoff with jitter for control-plane retries.
"""

import random
from dataclasses import dataclass, field

from slurmbridge.core.schema import DispatchConfig


@dataclass
class BackoffPolicy:
    """Bounded exponential backoff.

    The delay before retry ``n`` (1-based) is
    ``min(max_backoff, initial_backoff * multiplier ** (n - 1))``, reduced by
    a random fraction of at most ``jitter`` so that workers retrying the same
    outage spread out.
    """

    max_attempts: int
    initial_backoff: float
    max_backoff: float
    multiplier: float = 2.0
    jitter: float = 0.5
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_config(cls, config: DispatchConfig, rng: random.Random | None = None) -> "BackoffPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_backoff=config.initial_backoff,
            max_backoff=config.max_backoff,
            multiplier=config.backoff_multiplier,
            jitter=config.jitter,
            rng=rng or random.Random(),
        )

    def base_delay(self, attempt: int) -> float:
        return min(self.max_backoff, self.initial_backoff * self.multiplier ** (attempt - 1))

    def delay(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        return base * (1.0 - self.jitter * self.rng.random())

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
