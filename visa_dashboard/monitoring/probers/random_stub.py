"""
Random stub prober: stands in for the embassy site. A weighted coin-flip decides
availability (default 10% available, 90% not).
"""
import logging
import random
from typing import Optional

from .base import (
    MESSAGE_APPOINTMENTS_AVAILABLE,
    MESSAGE_NO_APPOINTMENTS,
    AppointmentProber,
    ProbeResult,
)


class RandomStubProber(AppointmentProber):
    def __init__(self, available_probability: float = 0.1, rng: Optional[random.Random] = None, logger=None):
        if not 0.0 <= available_probability <= 1.0:
            raise ValueError(f"available_probability must be within [0, 1], got {available_probability}")
        self.available_probability = available_probability
        self.rng = rng or random.Random()
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: dict, logger=None) -> "RandomStubProber":
        return cls(float(config.get("available_probability", 0.1)), logger=logger)

    def probe(self) -> ProbeResult:
        roll = self.rng.random()
        if roll < self.available_probability:
            return ProbeResult(True, MESSAGE_APPOINTMENTS_AVAILABLE)
        return ProbeResult(False, MESSAGE_NO_APPOINTMENTS)
