"""
CLI report — one-shot per-GPU telemetry report.

Reads every GPU once through the NVAPI session and renders the result as:
  (default)   Human-readable text, one block per GPU
  --json      JSON document (pipe to jq, or feed an offset-control loop)

Failures are per field: a GPU whose thermal query fails still reports its
voltage, and the next GPU is read normally. Only load/init/enumeration
failures abort the run.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import asdict, dataclass

from nvstats.lib.config import ReaderConfig
from nvstats.lib.nvapi import (
    Capability,
    EnumError,
    Gpu,
    InitError,
    LoadError,
    NvApiSession,
    ReadError,
    UnresolvedInterface,
)

logger = logging.getLogger("nvstats.cli")

_RULE = "-" * 49
_BANNER = "=" * 49


class FieldState(str, enum.Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"   # driver lacks the capability
    ERROR = "error"               # driver rejected the call


@dataclass
class GpuReading:
    """Everything the report knows about one GPU.

    None values with state OK mean the sensor reported its "absent"
    sentinel (see decode_temperature).
    """

    index: int
    name: str = ""
    bus_id: int | None = None
    thermal_mask: int = 0
    voltage_uv: int | None = None
    voltage_state: FieldState = FieldState.OK
    hotspot_c: int | None = None
    memory_c: int | None = None
    thermal_state: FieldState = FieldState.OK
    nvml_core_c: int | None = None

    @property
    def voltage_v(self) -> float | None:
        if self.voltage_uv is None:
            return None
        return self.voltage_uv / 1_000_000


def read_gpu(gpu: Gpu) -> GpuReading:
    """Collect one GPU's reading. Never raises ReadError/UnresolvedInterface."""
    r = GpuReading(index=gpu.index)

    # Identity is cosmetic; the telemetry doesn't depend on it
    try:
        r.name = gpu.name()
    except (ReadError, UnresolvedInterface) as e:
        logger.debug("GPU %d: no name (%s)", gpu.index, e)
    try:
        r.bus_id = gpu.bus_id()
    except (ReadError, UnresolvedInterface) as e:
        logger.debug("GPU %d: no bus id (%s)", gpu.index, e)

    r.thermal_mask = gpu.thermal_mask

    try:
        r.voltage_uv = gpu.voltage_uv()
    except UnresolvedInterface:
        r.voltage_state = FieldState.UNAVAILABLE
    except ReadError as e:
        logger.error("GPU %d: %s", gpu.index, e)
        r.voltage_state = FieldState.ERROR

    try:
        t = gpu.thermals()
        r.hotspot_c = t.hotspot_c
        r.memory_c = t.memory_c
    except UnresolvedInterface:
        r.thermal_state = FieldState.UNAVAILABLE
    except ReadError as e:
        logger.error("GPU %d: %s", gpu.index, e)
        r.thermal_state = FieldState.ERROR

    return r


def _cross_reference(readings: list[GpuReading]) -> None:
    """Fill NVML core temperature (and missing names) by PCI bus."""
    from nvstats.lib.nvml import devices_by_bus

    by_bus = devices_by_bus()
    for r in readings:
        dev = by_bus.get(r.bus_id) if r.bus_id is not None else None
        if dev is None:
            continue
        r.nvml_core_c = dev.core_temp_c
        if not r.name:
            r.name = dev.name


def collect(session: NvApiSession, gpu_index: int | None = None) -> list[GpuReading]:
    """Read all GPUs (or just gpu_index) from an initialized session."""
    gpus = session.gpus()
    if gpu_index is not None:
        if not 0 <= gpu_index < len(gpus):
            raise IndexError(f"GPU {gpu_index} not found ({len(gpus)} present)")
        gpus = [gpus[gpu_index]]
    readings = [read_gpu(g) for g in gpus]
    if session.config.use_nvml:
        _cross_reference(readings)
    return readings


# ── Rendering ──

def _voltage_text(r: GpuReading) -> str:
    if r.voltage_state is FieldState.ERROR:
        return "Error reading"
    if r.voltage_uv is None:
        return "Not available"
    return f"{r.voltage_v:.3f} V ({r.voltage_uv} µV)"


def _temp_text(r: GpuReading, value: int | None) -> str:
    if r.thermal_state is FieldState.ERROR:
        return "Error reading"
    if value is None:
        return "Not available"
    return f"{value} °C"


def render_gpu(r: GpuReading) -> str:
    lines = [_RULE, f"GPU {r.index}: {r.name}" if r.name else f"GPU {r.index}:"]
    if r.bus_id is not None:
        lines.append(f"PCI Bus: {r.bus_id}")
    lines.append(_RULE)
    lines.append(f"Thermals mask: 0x{r.thermal_mask:08x}")
    lines.append("")
    lines.append(f"Core Voltage: {_voltage_text(r)}")
    lines.append(f"Hotspot Temperature: {_temp_text(r, r.hotspot_c)}")
    lines.append(f"Memory Temperature: {_temp_text(r, r.memory_c)}")
    if r.nvml_core_c is not None:
        lines.append(f"Core Temperature (NVML): {r.nvml_core_c} °C")
    return "\n".join(lines)


def render_text(readings: list[GpuReading], total: int | None = None) -> str:
    """Text report. total is the enumerated GPU count when only some are shown."""
    if total is None:
        total = len(readings)
    out = [f"Found {total} NVIDIA GPU(s)"]
    if len(readings) != total:
        out.append("Showing GPU " + ", ".join(str(r.index) for r in readings))
    out.append("")
    for r in readings:
        out.append(render_gpu(r))
        out.append("")
    return "\n".join(out)


def output_json(readings: list[GpuReading]) -> str:
    gpus = []
    for r in readings:
        d = asdict(r)
        d["thermal_mask"] = f"0x{r.thermal_mask:08x}"
        d["voltage_v"] = r.voltage_v
        gpus.append(d)
    return json.dumps({"gpus": gpus}, indent=2)


# ── Commands ──
# Handler functions called from cli/main.py via deferred import.

def _config(args) -> ReaderConfig:
    return ReaderConfig(library=args.library or "", use_nvml=not getattr(args, "no_nvml", False))


def cmd_report(args) -> int:
    """Print the telemetry report. 0 once the per-GPU report is reached."""
    if not args.json:
        print(_BANNER)
        print("NVIDIA GPU Stats Reader")
        print("Undocumented NVAPI telemetry: voltage, hotspot, memory")
        print(_BANNER)
        print()

    try:
        with NvApiSession(_config(args)) as session:
            if not args.json:
                print("NVAPI initialized successfully.\n")
            readings = collect(session, args.gpu)
            total = len(session.gpus())
    except (LoadError, InitError, EnumError, IndexError) as e:
        logger.error("%s", e)
        return 1

    if args.json:
        print(output_json(readings))
    else:
        print(render_text(readings, total))
        print("Done.")
    return 0


def cmd_interfaces(args) -> int:
    """List every known capability and whether this driver resolves it."""
    try:
        with NvApiSession(_config(args)) as session:
            available = session.capabilities()
    except (LoadError, InitError) as e:
        logger.error("%s", e)
        return 1

    print(f"{'ID':<12}{'Capability':<28}Resolved")
    for cap in Capability:
        print(f"0x{cap.value:08X}  {cap.name:<28}{'yes' if available[cap] else 'no'}")
    return 0
