"""
NVAPI ctypes reader — undocumented NVIDIA telemetry (Linux and Windows).

Uses undocumented NvAPI functions via nvapi_QueryInterface for:
  - Core voltage (GPU_GetCurrentVoltage)
  - Hotspot and memory temperature (GPU_GetThermals)

The driver module (libnvidia-api.so.1 / nvapi64.dll) exports exactly one
symbol, nvapi_QueryInterface. Every other entry point is looked up by a
32-bit interface ID at runtime. Unknown IDs come back as NULL, so every
capability is optional until proven otherwise.

Nothing here writes to the GPU. Reference: LACT (Linux GPU control tool),
pynvraw.
"""

from __future__ import annotations

import _ctypes
import ctypes
import enum
import logging
import sys
from dataclasses import dataclass

from nvstats.lib.config import ReaderConfig

logger = logging.getLogger("nvstats.nvapi")

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Error handling
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

# NVAPI uses integer return codes. 0 = success, negative = error.
# These codes are from the public nvapi.h header.
NVAPI_OK = 0
NVAPI_NO_IMPLEMENTATION = -3

NVAPI_ERRORS = {
    0:  "OK",
    -1: "ERROR",
    -2: "LIBRARY_NOT_FOUND",
    -3: "NO_IMPLEMENTATION",
    -4: "API_NOT_INITIALIZED",
    -5: "INVALID_ARGUMENT",
    -6: "NVIDIA_DEVICE_NOT_FOUND",
    -7: "END_ENUMERATION",
    -8: "INVALID_HANDLE",
    -9: "INCOMPATIBLE_STRUCT_VERSION",
    -14: "NOT_SUPPORTED",
    -40: "INSUFFICIENT_BUFFER",
    -104: "INVALID_USER_PRIVILEGE",
}

NVAPI_MAX_PHYSICAL_GPUS = 64
NVAPI_SHORT_STRING_MAX = 64


class NvStatsError(Exception):
    """Base class for every reader failure."""


class LoadError(NvStatsError):
    """NVAPI module missing, or it does not export nvapi_QueryInterface."""


class UnresolvedInterface(NvStatsError):
    """The running driver does not expose this capability."""

    def __init__(self, capability: Capability):
        super().__init__(
            f"{capability.name} (0x{capability.value:08X}) is not exposed by this driver"
        )
        self.capability = capability


class NvApiError(NvStatsError):
    """NVAPI call failed."""

    def __init__(self, func_name: str, status: int, text: str | None = None):
        name = text or NVAPI_ERRORS.get(status, f"UNKNOWN({status})")
        super().__init__(f"{func_name} returned {status} ({name})")
        self.status = status
        self.func_name = func_name


class InitError(NvApiError):
    """NvAPI_Initialize rejected the session."""


class EnumError(NvApiError):
    """EnumPhysicalGPUs failed; no device list is available."""


class ReadError(NvApiError):
    """A telemetry query was rejected for one device."""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Capabilities  (QueryInterface IDs, from LACT + NvAPIWrapper)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class Capability(enum.IntEnum):
    """Named driver entry points. The value is the QueryInterface ID."""

    INITIALIZE = 0x0150E828
    UNLOAD = 0xD22BDD7E
    ENUM_PHYSICAL_GPUS = 0xE5AC921F
    GPU_GET_BUS_ID = 0x1BE0B8E5
    GPU_GET_FULL_NAME = 0xCEEE8E9F
    GET_ERROR_MESSAGE = 0x6C2D048C
    GPU_GET_THERMALS = 0x65FE3AAD          # undocumented
    GPU_GET_CURRENT_VOLTAGE = 0x465F9BCF   # undocumented


# NVAPI functions use C calling conventions. Three shapes cover everything:
#
# _FN_VOID        fn() -> status                   Initialize, Unload
# _FN_2PTR        fn(void*, void*) -> status       (handle, struct*) queries,
#                                                  EnumPhysicalGPUs(handles[], uint*)
# _FN_STATUS_TEXT fn(int, char[64]) -> status      GetErrorMessage
_FN_VOID = ctypes.CFUNCTYPE(ctypes.c_int)
_FN_2PTR = ctypes.CFUNCTYPE(ctypes.c_int, ctypes.c_void_p, ctypes.c_void_p)
_FN_STATUS_TEXT = ctypes.CFUNCTYPE(ctypes.c_int, ctypes.c_int, ctypes.c_void_p)

_SIGNATURES = {
    Capability.INITIALIZE: _FN_VOID,
    Capability.UNLOAD: _FN_VOID,
    Capability.ENUM_PHYSICAL_GPUS: _FN_2PTR,
    Capability.GPU_GET_BUS_ID: _FN_2PTR,
    Capability.GPU_GET_FULL_NAME: _FN_2PTR,
    Capability.GET_ERROR_MESSAGE: _FN_STATUS_TEXT,
    Capability.GPU_GET_THERMALS: _FN_2PTR,
    Capability.GPU_GET_CURRENT_VOLTAGE: _FN_2PTR,
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Versioned structures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def _make_version(struct_size: int, version: int) -> int:
    """Reproduce the MAKE_NVAPI_VERSION(struct, ver) C macro.

    Every NVAPI struct starts with a uint32 version tag:
      bits 0-15:  struct size in bytes
      bits 16-31: version number

    If this tag is wrong the driver returns -9 (INCOMPATIBLE_STRUCT_VERSION)
    and leaves the struct untouched.
    """
    return struct_size | (version << 16)


class NvVersioned(ctypes.Structure):
    """Zero-filled structure stamped with its own size and version."""

    _nv_version_ = 0

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.version = _make_version(ctypes.sizeof(self), self._nv_version_)


class NvApiThermals(NvVersioned):
    """GPU_GetThermals payload, 168 bytes, version 2.

    values[] holds °C × 256 for each slot selected by mask.
    Hotspot lives at index 9, memory junction at index 15.
    """

    _nv_version_ = 2
    _fields_ = [("version", ctypes.c_uint32),
                ("mask", ctypes.c_uint32),
                ("values", ctypes.c_int32 * 40)]


class NvApiVoltage(NvVersioned):
    """GPU_GetCurrentVoltage payload, 76 bytes, version 1.

    The reserved blocks are unused but count toward the stamped size.
    """

    _nv_version_ = 1
    _fields_ = [("version", ctypes.c_uint32),
                ("flags", ctypes.c_uint32),
                ("reserved1", ctypes.c_uint32 * 8),
                ("value_uv", ctypes.c_uint32),
                ("reserved2", ctypes.c_uint32 * 8)]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Function pointer resolution
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class InterfaceResolver:
    """Turns capabilities into callables through nvapi_QueryInterface."""

    def __init__(self, query_interface):
        self._query = query_interface

    def resolve(self, capability: Capability):
        """Return a callable for capability, or None if the driver lacks it.

        None is not an error here. Callers decide whether a missing
        capability is fatal (Initialize) or just unavailable (thermals).
        """
        ptr = self._query(int(capability))
        if not ptr:
            logger.debug("QueryInterface(0x%08X) -> NULL (%s)", capability.value, capability.name)
            return None
        return _SIGNATURES[capability](ptr)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Session
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def _open_library(path: str):
    return ctypes.CDLL(path)


class NvApiSession:
    """Owns the loaded NVAPI module, the capability registry and GPU handles.

    Lifecycle is load() -> init() -> queries -> unload(). Using the session
    as a context manager runs the whole thing and guarantees unload() on
    every exit path, including a failed init().

    Not thread-safe: the driver module and resolved pointers are shared
    state. Callers polling from several threads need one lock around it.
    """

    def __init__(self, config: ReaderConfig | None = None, library=None):
        self.config = config or ReaderConfig()
        self._injected = library
        self._library = None
        self._resolver: InterfaceResolver | None = None
        self._fn: dict[Capability, object] = {}
        self._gpus: list[Gpu] | None = None
        self._initialized = False
        # Bumped on every successful init; GPU handles are only valid within one
        self._generation = 0

    def __enter__(self) -> NvApiSession:
        self.load()
        try:
            self.init()
        except BaseException:
            self.unload()
            raise
        return self

    def __exit__(self, *exc) -> None:
        self.unload()

    @property
    def loaded(self) -> bool:
        return self._resolver is not None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def load(self) -> None:
        """Open the driver module and bind nvapi_QueryInterface."""
        if self.loaded:
            return
        if self._injected is not None:
            lib = self._injected
        else:
            path = self.config.library_path
            try:
                lib = _open_library(path)
            except OSError as e:
                raise LoadError(
                    f"Cannot load {path}: {e}. Make sure NVIDIA drivers are installed."
                ) from e
        self._library = lib

        # nvapi_QueryInterface is the ONLY exported symbol. It returns a raw
        # function pointer (void*) that we cast to the right signature.
        try:
            query = lib.nvapi_QueryInterface
        except AttributeError as e:
            self._release_library()
            raise LoadError(f"nvapi_QueryInterface not found in {self.config.library_path}") from e
        query.restype = ctypes.c_void_p
        query.argtypes = [ctypes.c_uint]
        self._resolver = InterfaceResolver(query)
        logger.debug("Loaded %s", self.config.library_path)

    def init(self) -> None:
        """Resolve the capability registry and call NvAPI_Initialize."""
        if self._initialized:
            return
        self.load()
        self._fn = {cap: self._resolver.resolve(cap) for cap in Capability}

        fn_init = self._fn[Capability.INITIALIZE]
        if fn_init is None:
            raise InitError("Initialize", NVAPI_NO_IMPLEMENTATION)
        self.check("Initialize", fn_init(), InitError)
        self._initialized = True
        self._generation += 1

        resolved = sum(1 for fn in self._fn.values() if fn is not None)
        logger.info("NVAPI initialized (%d/%d interfaces resolved)", resolved, len(self._fn))

    def unload(self) -> None:
        """Call NvAPI_Unload if the module was loaded, then release it.

        Safe to call in any state, any number of times. Never raises:
        failures are logged and teardown continues.
        """
        if self._resolver is not None:
            try:
                fn_unload = self._fn.get(Capability.UNLOAD) or self._resolver.resolve(Capability.UNLOAD)
                if fn_unload is not None:
                    status = fn_unload()
                    if status != NVAPI_OK:
                        logger.warning("Unload returned %d (%s)", status, NVAPI_ERRORS.get(status, "?"))
            except Exception:
                logger.warning("NvAPI_Unload failed", exc_info=True)
        self._release_library()

    def _release_library(self) -> None:
        lib, self._library = self._library, None
        self._resolver = None
        self._fn = {}
        self._gpus = None
        self._initialized = False
        if lib is None or lib is self._injected:
            return
        # ctypes keeps the module mapped for the life of the CDLL object
        # unless we close the OS handle ourselves.
        handle = getattr(lib, "_handle", None)
        close = getattr(_ctypes, "FreeLibrary" if sys.platform == "win32" else "dlclose", None)
        if handle and close is not None:
            try:
                close(handle)
            except OSError:
                logger.warning("Could not release %s", self.config.library_path, exc_info=True)

    # ── capability registry ──

    def function(self, capability: Capability):
        """Bound callable for capability, or None if the driver lacks it."""
        if not self._initialized:
            raise NvStatsError("NVAPI session is not initialized")
        return self._fn.get(capability)

    def capabilities(self) -> dict[Capability, bool]:
        """Which capabilities the running driver resolved."""
        if not self._initialized:
            raise NvStatsError("NVAPI session is not initialized")
        return {cap: fn is not None for cap, fn in self._fn.items()}

    def error_message(self, status: int) -> str:
        """Driver-provided text for status, or the nvapi.h name."""
        fn = self._fn.get(Capability.GET_ERROR_MESSAGE)
        if fn is not None:
            text = (ctypes.c_char * NVAPI_SHORT_STRING_MAX)()
            if fn(status, text) == NVAPI_OK and text.value:
                return text.value.decode("utf-8", errors="replace")
        return NVAPI_ERRORS.get(status, f"UNKNOWN({status})")

    def check(self, func_name: str, status: int, error: type[NvApiError] = NvApiError) -> int:
        if status != NVAPI_OK:
            raise error(func_name, status, self.error_message(status))
        return status

    # ── devices ──

    def enum_physical_gpus(self) -> list[int]:
        """Opaque handles of every physical GPU, valid until unload()."""
        fn = self.function(Capability.ENUM_PHYSICAL_GPUS)
        if fn is None:
            raise EnumError("EnumPhysicalGPUs", NVAPI_NO_IMPLEMENTATION)
        handles = (ctypes.c_void_p * NVAPI_MAX_PHYSICAL_GPUS)()
        count = ctypes.c_uint(0)
        self.check("EnumPhysicalGPUs", fn(handles, ctypes.byref(count)), EnumError)
        n = min(count.value, NVAPI_MAX_PHYSICAL_GPUS)
        return [handles[i] for i in range(n)]

    def gpus(self) -> list[Gpu]:
        """Gpu wrappers for this session. Enumerated once, then reused."""
        if self._gpus is None:
            self._gpus = [Gpu(self, h, i) for i, h in enumerate(self.enum_physical_gpus())]
        return self._gpus


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Queries
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def _query(session: NvApiSession, capability: Capability, func_name: str, handle, out) -> None:
    fn = session.function(capability)
    if fn is None:
        raise UnresolvedInterface(capability)
    session.check(func_name, fn(handle, ctypes.byref(out)), ReadError)


def query_thermals(session: NvApiSession, handle, mask: int) -> NvApiThermals:
    """One GPU_GetThermals call with a freshly stamped struct."""
    thermals = NvApiThermals()
    thermals.mask = mask & 0xFFFFFFFF
    _query(session, Capability.GPU_GET_THERMALS, "GPU_GetThermals", handle, thermals)
    return thermals


def probe_thermal_mask(session: NvApiSession, handle) -> int:
    """Find the widest sensor mask this GPU accepts.

    Asking for a slot the GPU doesn't have fails the whole call, and the
    valid slots differ per GPU. So we probe one bit at a time and stop at
    the first failure, treating every lower bit as valid.

    This assumes valid bits form a contiguous run from bit 0. It is a
    heuristic, not something the driver documents: a GPU with holes in
    its sensor layout gets under-reported.
    """
    try:
        query_thermals(session, handle, 1)
    except UnresolvedInterface:
        return 1
    except ReadError as e:
        logger.warning("Initial thermals query failed (%s), using mask 0x1", e)
        return 1

    for bit in range(32):
        try:
            query_thermals(session, handle, 1 << bit)
        except ReadError:
            logger.debug("Thermals probe stopped at bit %d", bit)
            return (1 << bit) - 1
    return 0xFFFFFFFF


def decode_temperature(raw: int) -> int | None:
    """°C from a raw thermal slot, or None if the sensor is absent.

    Slots hold °C << 8. 0 and anything >= 255 °C mean no sensor.
    """
    celsius = raw >> 8
    if 0 < celsius < 255:
        return celsius
    return None


@dataclass
class Thermals:
    mask: int
    hotspot_c: int | None
    memory_c: int | None


def read_thermals(session: NvApiSession, handle, mask: int,
                  hotspot_index: int = 9, memory_index: int = 15) -> Thermals:
    """Hotspot and memory temperature in °C (None = sensor absent).

    Raises ReadError if the driver rejects the query, UnresolvedInterface
    if it doesn't have GPU_GetThermals at all.
    """
    t = query_thermals(session, handle, mask)
    return Thermals(
        mask=mask,
        hotspot_c=decode_temperature(t.values[hotspot_index]),
        memory_c=decode_temperature(t.values[memory_index]),
    )


def read_voltage(session: NvApiSession, handle) -> int:
    """Core voltage in microvolts, exactly as the driver reports it."""
    v = NvApiVoltage()
    _query(session, Capability.GPU_GET_CURRENT_VOLTAGE, "GPU_GetCurrentVoltage", handle, v)
    return v.value_uv


def read_bus_id(session: NvApiSession, handle) -> int:
    """PCI bus number of the GPU."""
    bus_id = ctypes.c_uint(0)
    _query(session, Capability.GPU_GET_BUS_ID, "GPU_GetBusId", handle, bus_id)
    return bus_id.value


def read_full_name(session: NvApiSession, handle) -> str:
    """Marketing name, e.g. "NVIDIA GeForce RTX 4090"."""
    name = (ctypes.c_char * NVAPI_SHORT_STRING_MAX)()
    _query(session, Capability.GPU_GET_FULL_NAME, "GPU_GetFullName", handle, name)
    return name.value.decode("utf-8", errors="replace")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# GPU wrapper
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class Gpu:
    """One physical GPU within a session.

    The thermal mask is probed on first use and kept for the life of the
    session; there is no way to re-probe short of a new session. Once the
    session is unloaded the wrapper is dead, even if the session is opened
    again: fetch fresh ones from gpus().
    """

    def __init__(self, session: NvApiSession, handle, index: int):
        self.session = session
        self.handle = handle
        self.index = index
        self._generation = session._generation
        self._mask: int | None = None

    def __repr__(self) -> str:
        return f"Gpu(index={self.index}, handle=0x{self.handle or 0:x})"

    def _live_handle(self):
        if not self.session.initialized or self.session._generation != self._generation:
            raise NvStatsError(f"GPU {self.index} handle belongs to a closed NVAPI session")
        return self.handle

    @property
    def mask_known(self) -> bool:
        return self._mask is not None

    @property
    def thermal_mask(self) -> int:
        if self._mask is None:
            self._mask = probe_thermal_mask(self.session, self._live_handle())
        return self._mask

    def thermals(self) -> Thermals:
        cfg = self.session.config
        handle = self._live_handle()
        return read_thermals(self.session, handle, self.thermal_mask,
                             cfg.hotspot_index, cfg.memory_index)

    def voltage_uv(self) -> int:
        return read_voltage(self.session, self._live_handle())

    def bus_id(self) -> int:
        return read_bus_id(self.session, self._live_handle())

    def name(self) -> str:
        return read_full_name(self.session, self._live_handle())
