"""
Base type and interface for appointment availability probers.
All probers return a ProbeResult; raising means the probe itself failed.
"""
from abc import ABC, abstractmethod
from collections import namedtuple

ProbeResult = namedtuple(
    "ProbeResult",
    [
        "is_available",  # bool
        "message",       # human-readable outcome, stored on the check record
    ],
)

MESSAGE_NO_APPOINTMENTS = "No Appointments Available"
MESSAGE_APPOINTMENTS_AVAILABLE = "Appointments Available"


class AppointmentProber(ABC):
    """Abstract prober: decide whether appointment slots are currently offered."""

    @abstractmethod
    def probe(self) -> ProbeResult:
        """Run one availability probe. Raise on failure; do not return errors as results."""
        pass
