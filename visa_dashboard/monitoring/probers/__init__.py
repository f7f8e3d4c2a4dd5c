from .base import AppointmentProber, ProbeResult
from .page_fetch import PageFetchProber
from .random_stub import RandomStubProber

__all__ = ["AppointmentProber", "ProbeResult", "PageFetchProber", "RandomStubProber", "get_prober"]

_PROBERS = {
    "random": RandomStubProber,
    "page_fetch": PageFetchProber,
}


def get_prober(prober_type: str, config: dict, logger=None) -> AppointmentProber:
    """Factory: return prober instance for given type."""
    cls = _PROBERS.get((prober_type or "random").lower())
    if not cls:
        raise ValueError(f"Unknown prober type: {prober_type!r} (expected one of {sorted(_PROBERS)})")
    return cls.from_config(config or {}, logger=logger)
