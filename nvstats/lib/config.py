"""Reader configuration."""

from __future__ import annotations

import sys
from dataclasses import dataclass


def default_library() -> str:
    """Name of the NVAPI module shipped with the driver on this platform."""
    if sys.platform == "win32":
        # nvapi64 = 64-bit Python only; nvapi.dll = 32-bit
        return "nvapi64.dll" if sys.maxsize > 2**32 else "nvapi.dll"
    return "libnvidia-api.so.1"


@dataclass(frozen=True)
class ReaderConfig:
    """Immutable settings for one reader run.

    library: path or soname of the NVAPI module ("" = platform default)
    hotspot_index / memory_index: slots of the raw thermal values array
    use_nvml: cross-reference NVAPI devices with the documented NVML sensors
    """

    library: str = ""
    hotspot_index: int = 9
    memory_index: int = 15
    use_nvml: bool = True

    @property
    def library_path(self) -> str:
        return self.library or default_library()
