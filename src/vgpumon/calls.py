"""One wrapper per NVML entry point.

Each wrapper marshals its arguments into ctypes objects, makes exactly one
native call (list queries may make a second one, see :func:`_query_list`),
routes the status through :func:`vgpumon.errors.check_return` and only then
decodes the output buffers.  Nothing is decoded from a failed call.
"""

from __future__ import annotations

import logging
from ctypes import c_uint, c_void_p, create_string_buffer, pointer
from typing import Any, List, Tuple

import pynvml

from .errors import check_return
from .models import DeviceHandle, MemoryInfo, UtilizationInfo, VgpuHandle, VgpuTypeHandle
from .native import NvmlLibrary

logger = logging.getLogger(__name__)

DEFAULT_LIST_CAPACITY = 64

# Largest value an ``unsigned int`` argument can carry.
_UINT_MAX = 0xFFFFFFFF


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(lib: NvmlLibrary, name: str, *args: Any) -> int:
    return int(lib.function(name)(*args))


def _device(h: DeviceHandle) -> c_void_p:
    return c_void_p(h.handle)


def _decode(buf: Any) -> str:
    # ``.value`` stops at the first NUL byte.
    return buf.value.decode("utf-8", errors="replace")


def _query_list(
    lib: NvmlLibrary, name: str, handle: Any, item_type: Any, capacity: int
) -> List[Any]:
    """Call a ``(handle, unsigned int *count, T *items)`` entry point.

    If NVML reports ``NVML_ERROR_INSUFFICIENT_SIZE`` together with a count
    larger than the buffer, the buffer is grown to that count and the call
    is retried once.  Only the first ``count`` entries are returned.
    """
    if capacity < 1:
        raise ValueError("capacity must be >= 1")

    count = c_uint(capacity)
    items = (item_type * capacity)()
    ret = _call(lib, name, handle, pointer(count), items)

    if ret == pynvml.NVML_ERROR_INSUFFICIENT_SIZE and count.value > capacity:
        logger.debug("%s reported %d entries (buffer %d); retrying", name, count.value, capacity)
        capacity = count.value
        count = c_uint(capacity)
        items = (item_type * capacity)()
        ret = _call(lib, name, handle, pointer(count), items)

    check_return(lib, ret)
    return list(items[: min(count.value, capacity)])


# ---------------------------------------------------------------------------
# Library lifecycle
# ---------------------------------------------------------------------------


def nvml_init(lib: NvmlLibrary) -> None:
    check_return(lib, lib.init())


def nvml_shutdown(lib: NvmlLibrary) -> None:
    check_return(lib, lib.shutdown())


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


def device_get_count(lib: NvmlLibrary) -> int:
    n = c_uint(0)
    check_return(lib, _call(lib, "nvmlDeviceGetCount_v2", pointer(n)))
    return n.value


def device_get_handle_by_index(lib: NvmlLibrary, index: int) -> DeviceHandle:
    if not 0 <= index <= _UINT_MAX:
        raise ValueError(f"device index must be in [0, {_UINT_MAX}], got {index}")
    dev = c_void_p()
    check_return(lib, _call(lib, "nvmlDeviceGetHandleByIndex_v2", c_uint(index), pointer(dev)))
    return DeviceHandle(handle=dev.value or 0)


def device_get_memory_info(lib: NvmlLibrary, h: DeviceHandle) -> MemoryInfo:
    mem = pynvml.c_nvmlMemory_t()
    check_return(lib, _call(lib, "nvmlDeviceGetMemoryInfo", _device(h), pointer(mem)))
    return MemoryInfo(free=mem.free, used=mem.used, total=mem.total)


def device_get_compute_running_processes(
    lib: NvmlLibrary, h: DeviceHandle, capacity: int = DEFAULT_LIST_CAPACITY
) -> List[Tuple[int, int]]:
    """Return ``(pid, used_gpu_memory)`` for each compute process."""
    procs = _query_list(
        lib,
        "nvmlDeviceGetComputeRunningProcesses_v3",
        _device(h),
        pynvml.c_nvmlProcessInfo_v2_t,
        capacity,
    )
    return [(p.pid, p.usedGpuMemory) for p in procs]


def device_get_utilization_rates(lib: NvmlLibrary, h: DeviceHandle) -> UtilizationInfo:
    util = pynvml.c_nvmlUtilization_t()
    check_return(lib, _call(lib, "nvmlDeviceGetUtilizationRates", _device(h), pointer(util)))
    return UtilizationInfo(gpu_util=util.gpu, mem_util=util.memory)


def _codec_utilization(lib: NvmlLibrary, name: str, h: DeviceHandle) -> int:
    util = c_uint(0)
    period_us = c_uint(0)
    check_return(lib, _call(lib, name, _device(h), pointer(util), pointer(period_us)))
    return util.value


def device_get_encoder_utilization(lib: NvmlLibrary, h: DeviceHandle) -> int:
    return _codec_utilization(lib, "nvmlDeviceGetEncoderUtilization", h)


def device_get_decoder_utilization(lib: NvmlLibrary, h: DeviceHandle) -> int:
    return _codec_utilization(lib, "nvmlDeviceGetDecoderUtilization", h)


def device_get_vbios_version(lib: NvmlLibrary, h: DeviceHandle) -> str:
    buf = create_string_buffer(pynvml.NVML_DEVICE_VBIOS_VERSION_BUFFER_SIZE)
    ret = _call(
        lib,
        "nvmlDeviceGetVbiosVersion",
        _device(h),
        buf,
        c_uint(pynvml.NVML_DEVICE_VBIOS_VERSION_BUFFER_SIZE),
    )
    check_return(lib, ret)
    return _decode(buf)


def device_get_active_vgpus(
    lib: NvmlLibrary, h: DeviceHandle, capacity: int = DEFAULT_LIST_CAPACITY
) -> List[VgpuHandle]:
    ids = _query_list(lib, "nvmlDeviceGetActiveVgpus", _device(h), c_uint, capacity)
    return [VgpuHandle(handle=i) for i in ids]


# ---------------------------------------------------------------------------
# vGPU types and instances
# ---------------------------------------------------------------------------


def vgpu_instance_get_type(lib: NvmlLibrary, v: VgpuHandle) -> VgpuTypeHandle:
    type_id = c_uint(0)
    check_return(lib, _call(lib, "nvmlVgpuInstanceGetType", c_uint(v.handle), pointer(type_id)))
    return VgpuTypeHandle(handle=type_id.value)


def vgpu_type_get_name(lib: NvmlLibrary, t: VgpuTypeHandle) -> str:
    buf = create_string_buffer(pynvml.NVML_DEVICE_NAME_BUFFER_SIZE)
    size = c_uint(pynvml.NVML_DEVICE_NAME_BUFFER_SIZE)
    check_return(lib, _call(lib, "nvmlVgpuTypeGetName", c_uint(t.handle), buf, pointer(size)))
    return _decode(buf)


def vgpu_type_get_max_instances(lib: NvmlLibrary, h: DeviceHandle, t: VgpuTypeHandle) -> int:
    n = c_uint(0)
    ret = _call(lib, "nvmlVgpuTypeGetMaxInstances", _device(h), c_uint(t.handle), pointer(n))
    check_return(lib, ret)
    return n.value


def vgpu_instance_get_frame_rate_limit(lib: NvmlLibrary, v: VgpuHandle) -> int:
    limit = c_uint(0)
    ret = _call(lib, "nvmlVgpuInstanceGetFrameRateLimit", c_uint(v.handle), pointer(limit))
    check_return(lib, ret)
    return limit.value


def vgpu_instance_get_vm_driver_version(lib: NvmlLibrary, v: VgpuHandle) -> str:
    buf = create_string_buffer(pynvml.NVML_SYSTEM_DRIVER_VERSION_BUFFER_SIZE)
    ret = _call(
        lib,
        "nvmlVgpuInstanceGetVmDriverVersion",
        c_uint(v.handle),
        buf,
        c_uint(pynvml.NVML_SYSTEM_DRIVER_VERSION_BUFFER_SIZE),
    )
    check_return(lib, ret)
    return _decode(buf)


def vgpu_instance_get_vm_id(lib: NvmlLibrary, v: VgpuHandle) -> str:
    buf = create_string_buffer(pynvml.NVML_DEVICE_UUID_BUFFER_SIZE)
    id_type = c_uint(0)
    ret = _call(
        lib,
        "nvmlVgpuInstanceGetVmID",
        c_uint(v.handle),
        buf,
        c_uint(pynvml.NVML_DEVICE_UUID_BUFFER_SIZE),
        pointer(id_type),
    )
    check_return(lib, ret)
    return _decode(buf)
