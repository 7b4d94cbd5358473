"""
NVML cross-reference — documented sensor values next to the NVAPI ones.

Uses nvidia-ml-py (pynvml), the official NVIDIA Python binding for the
NVIDIA Management Library. NVML only exposes the public sensors (core/edge
temperature, not hotspot or memory junction), which makes it a useful
sanity check for the undocumented readings from nvapi.py.

NVML and NVAPI enumerate GPUs in different orders, so devices are matched
by PCI bus number rather than by index.

Every NVML failure is non-fatal: the caller just gets fewer fields.
"""

from __future__ import annotations

import atexit
import logging
from dataclasses import dataclass

import warnings as _warnings

_warnings.filterwarnings("ignore", message=".*pynvml.*deprecated.*", category=FutureWarning)

import pynvml as nvml  # noqa: E402

logger = logging.getLogger("nvstats.nvml")

# NVML must be initialized once before any calls, and shut down on exit.
_initialized = False


def _ensure_init() -> None:
    """Lazily initialize NVML on first use."""
    global _initialized
    if not _initialized:
        nvml.nvmlInit()
        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    """Clean up NVML on exit. Errors are logged, never raised."""
    global _initialized
    if _initialized:
        try:
            nvml.nvmlShutdown()
        except nvml.NVMLError as e:
            logger.debug("nvmlShutdown failed: %s", e)
        _initialized = False


def _safe(fn, *args, default=None):
    """Call an NVML function, returning default if NVML rejects it."""
    try:
        return fn(*args)
    except nvml.NVMLError:
        return default


def _text(value) -> str:
    # Older pynvml releases return bytes, newer ones str
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


@dataclass
class NvmlDevice:
    """Documented view of one GPU."""

    index: int
    name: str = ""
    pci_bus: int | None = None
    core_temp_c: int | None = None


def devices() -> list[NvmlDevice]:
    """Read name, PCI bus and core temperature of every GPU."""
    _ensure_init()
    found = []
    for i in range(nvml.nvmlDeviceGetCount()):
        h = nvml.nvmlDeviceGetHandleByIndex(i)
        pci = _safe(nvml.nvmlDeviceGetPciInfo, h)
        found.append(NvmlDevice(
            index=i,
            name=_text(_safe(nvml.nvmlDeviceGetName, h, default="")),
            pci_bus=pci.bus if pci is not None else None,
            core_temp_c=_safe(nvml.nvmlDeviceGetTemperature, h, nvml.NVML_TEMPERATURE_GPU),
        ))
    return found


def devices_by_bus() -> dict[int, NvmlDevice]:
    """NVML devices keyed by PCI bus number. Empty if NVML can't start."""
    try:
        found = devices()
    except nvml.NVMLError as e:
        logger.info("NVML unavailable, skipping cross-reference: %s", e)
        return {}
    return {d.pci_bus: d for d in found if d.pci_bus is not None}
