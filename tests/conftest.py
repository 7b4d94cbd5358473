"""Simulated NVAPI driver — no GPU required.

FakeDriver exposes nvapi_QueryInterface like the real module does. Each
known interface ID maps to a real ctypes callback, so the session resolves
genuine function pointers and the structs travel through ctypes exactly as
they would into the driver.
"""

from __future__ import annotations

import ctypes
import logging

import pytest

from nvstats.lib import nvapi
from nvstats.lib.nvapi import Capability, NvApiSession, NvApiThermals, NvApiVoltage

_FN_VOID = ctypes.CFUNCTYPE(ctypes.c_int)
_FN_2PTR = ctypes.CFUNCTYPE(ctypes.c_int, ctypes.c_void_p, ctypes.c_void_p)
_FN_STATUS_TEXT = ctypes.CFUNCTYPE(ctypes.c_int, ctypes.c_int, ctypes.c_void_p)

OK = 0
INVALID_ARGUMENT = -5
INCOMPATIBLE_STRUCT_VERSION = -9
NOT_SUPPORTED = -14

THERMALS_STAMP = ctypes.sizeof(NvApiThermals) | (2 << 16)
VOLTAGE_STAMP = ctypes.sizeof(NvApiVoltage) | (1 << 16)


class FakeDriver:
    """Stand-in for libnvidia-api.so.1."""

    def __init__(self, num_gpus: int = 2) -> None:
        self.handles = [0x1000 * (i + 1) for i in range(num_gpus)]
        self.missing: set[Capability] = set()
        self.init_status = OK
        self.enum_status = OK
        self.unload_calls = 0
        self.init_calls = 0

        # Thermals: slots above max_mask_bit are rejected; None = accept all
        self.max_mask_bit: int | None = None
        self.thermal_fail: set[int] = set()       # handles rejecting every thermal call
        self.thermals_stamp = THERMALS_STAMP
        self.hotspot_raw = {h: 6400 for h in self.handles}     # 25 °C
        self.memory_raw = {h: 17920 for h in self.handles}     # 70 °C
        self.thermal_calls: list[tuple[int, int, int]] = []    # (handle, mask, version)

        # Voltage
        self.voltage_fail: set[int] = set()
        self.voltage_stamp = VOLTAGE_STAMP
        self.voltage_raw = {h: 850000 for h in self.handles}
        self.voltage_reserved_dirty = False

        self.names = {h: f"NVIDIA GeForce RTX 40{i}0".encode() for i, h in enumerate(self.handles)}
        self.bus_ids = {h: i + 1 for i, h in enumerate(self.handles)}

        self._callbacks = {
            Capability.INITIALIZE: _FN_VOID(self._initialize),
            Capability.UNLOAD: _FN_VOID(self._unload),
            Capability.ENUM_PHYSICAL_GPUS: _FN_2PTR(self._enum),
            Capability.GPU_GET_BUS_ID: _FN_2PTR(self._bus_id),
            Capability.GPU_GET_FULL_NAME: _FN_2PTR(self._full_name),
            Capability.GET_ERROR_MESSAGE: _FN_STATUS_TEXT(self._error_message),
            Capability.GPU_GET_THERMALS: _FN_2PTR(self._thermals),
            Capability.GPU_GET_CURRENT_VOLTAGE: _FN_2PTR(self._voltage),
        }

        def nvapi_QueryInterface(interface_id):
            try:
                cap = Capability(interface_id)
            except ValueError:
                return None
            if cap in self.missing:
                return None
            return ctypes.cast(self._callbacks[cap], ctypes.c_void_p).value

        # Plain function, so the session can set restype/argtypes on it
        self.nvapi_QueryInterface = nvapi_QueryInterface

    # ── driver entry points ──

    def _initialize(self) -> int:
        self.init_calls += 1
        return self.init_status

    def _unload(self) -> int:
        self.unload_calls += 1
        return OK

    def _enum(self, handles_ptr, count_ptr) -> int:
        if self.enum_status != OK:
            return self.enum_status
        arr = (ctypes.c_void_p * nvapi.NVAPI_MAX_PHYSICAL_GPUS).from_address(handles_ptr)
        for i, h in enumerate(self.handles):
            arr[i] = h
        ctypes.c_uint.from_address(count_ptr).value = len(self.handles)
        return OK

    def _bus_id(self, handle, out_ptr) -> int:
        ctypes.c_uint.from_address(out_ptr).value = self.bus_ids[handle]
        return OK

    def _full_name(self, handle, out_ptr) -> int:
        name = self.names[handle] + b"\0"
        ctypes.memmove(out_ptr, name, len(name))
        return OK

    def _error_message(self, status, out_ptr) -> int:
        text = {
            INVALID_ARGUMENT: b"NVAPI_INVALID_ARGUMENT",
            INCOMPATIBLE_STRUCT_VERSION: b"NVAPI_INCOMPATIBLE_STRUCT_VERSION",
            NOT_SUPPORTED: b"NVAPI_NOT_SUPPORTED",
        }.get(status, b"NVAPI_ERROR") + b"\0"
        ctypes.memmove(out_ptr, text, len(text))
        return OK

    def _thermals(self, handle, out_ptr) -> int:
        t = NvApiThermals.from_address(out_ptr)
        self.thermal_calls.append((handle, t.mask, t.version))
        if t.version != self.thermals_stamp:
            return INCOMPATIBLE_STRUCT_VERSION
        if handle in self.thermal_fail:
            return NOT_SUPPORTED
        if self.max_mask_bit is not None and t.mask >> (self.max_mask_bit + 1):
            return INVALID_ARGUMENT
        t.values[9] = self.hotspot_raw[handle]
        t.values[15] = self.memory_raw[handle]
        return OK

    def _voltage(self, handle, out_ptr) -> int:
        v = NvApiVoltage.from_address(out_ptr)
        if v.version != self.voltage_stamp:
            return INCOMPATIBLE_STRUCT_VERSION
        if handle in self.voltage_fail:
            return NOT_SUPPORTED
        if any(v.reserved1) or any(v.reserved2) or v.flags:
            self.voltage_reserved_dirty = True
        v.value_uv = self.voltage_raw[handle]
        return OK


@pytest.fixture(autouse=True)
def _reset_logging():
    """main() installs a handler bound to the captured stderr; drop it after each test."""
    logger = logging.getLogger("nvstats")
    yield
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def session(driver: FakeDriver):
    with NvApiSession(library=driver) as s:
        yield s


@pytest.fixture
def patched_loader(monkeypatch: pytest.MonkeyPatch, driver: FakeDriver) -> FakeDriver:
    """Make NvApiSession.load() open the fake driver instead of the real one."""
    opened: list[str] = []

    def _open(path: str) -> FakeDriver:
        opened.append(path)
        return driver

    monkeypatch.setattr(nvapi, "_open_library", _open)
    driver.opened = opened  # type: ignore[attr-defined]
    return driver
