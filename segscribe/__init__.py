"""Top-level package for segscribe."""

from . import config, connectivity, coordinator, ledger, recorder, scheduler, segment_store, storage, transcriber, volume

__all__ = [
    "config",
    "connectivity",
    "coordinator",
    "ledger",
    "recorder",
    "scheduler",
    "segment_store",
    "storage",
    "transcriber",
    "volume",
]
