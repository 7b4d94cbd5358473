"""Read undocumented NVIDIA GPU telemetry through NVAPI."""

from nvstats.lib.config import ReaderConfig
from nvstats.lib.nvapi import (
    Capability,
    EnumError,
    Gpu,
    InitError,
    LoadError,
    NvApiError,
    NvApiSession,
    NvStatsError,
    ReadError,
    UnresolvedInterface,
)

__version__ = "0.1.0"

__all__ = [
    "Capability", "EnumError", "Gpu", "InitError", "LoadError", "NvApiError",
    "NvApiSession", "NvStatsError", "ReadError", "ReaderConfig", "UnresolvedInterface",
]
