"""Shared fixtures: an in-memory NVML.

``FakeNvml`` implements the entry points :mod:`vgpumon.calls` uses against
the same ctypes out-parameters the real library fills in, so the whole
marshalling path runs on machines without an NVIDIA driver.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from vgpumon.native import NvmlLibrary

SUCCESS = 0
INVALID_ARGUMENT = 2
UNINITIALIZED = 1
INSUFFICIENT_SIZE = 7
UNKNOWN = 999


@dataclass
class FakeVgpu:
    instance: int
    type_id: int
    frame_rate_limit: int = 60
    driver_version: str = "535.104.05"
    vm_id: str = "vm-0"


@dataclass
class FakeDevice:
    handle: int
    free: int = 0
    used: int = 0
    total: int = 0
    gpu_util: int = 0
    mem_util: int = 0
    enc_util: int = 0
    dec_util: int = 0
    vbios: str = "90.02.0B.00.01"
    processes: List[Tuple[int, int]] = field(default_factory=list)
    vgpus: List[FakeVgpu] = field(default_factory=list)


class FakeNvml(NvmlLibrary):
    """Scriptable stand-in for ``libnvidia-ml``.

    * ``fail[name] = status`` makes entry point *name* return *status*
      without touching its out-parameters.
    * ``bad_indices`` lists device indices whose handle lookup fails.
    * ``calls`` records every entry point invoked, in order.
    """

    ERROR_STRINGS = {
        UNINITIALIZED: "Uninitialized",
        INVALID_ARGUMENT: "Invalid Argument",
        INSUFFICIENT_SIZE: "Insufficient Size",
        UNKNOWN: "Unknown Error",
    }

    def __init__(self, devices: Optional[List[FakeDevice]] = None) -> None:
        self.devices: List[FakeDevice] = list(devices or [])
        self.vgpu_types: Dict[int, Tuple[str, int]] = {}
        self.fail: Dict[str, int] = {}
        self.bad_indices: Set[int] = set()
        self.calls: List[str] = []
        self.init_count = 0

    # -- NvmlLibrary ---------------------------------------------------------

    def function(self, name: str) -> Callable[..., int]:
        impl = getattr(self, "_" + name)

        def entry_point(*args):
            self.calls.append(name)
            if name in self.fail:
                return self.fail[name]
            return impl(*args)

        return entry_point

    def error_string(self, code: int) -> str:
        return self.ERROR_STRINGS.get(code, "Unknown Error")

    @property
    def initialized(self) -> bool:
        return self.init_count > 0

    # -- lookup helpers --------------------------------------------------------

    def _device(self, h) -> Optional[FakeDevice]:
        for d in self.devices:
            if d.handle == h.value:
                return d
        return None

    def _vgpu(self, v) -> Optional[FakeVgpu]:
        for d in self.devices:
            for fv in d.vgpus:
                if fv.instance == v.value:
                    return fv
        return None

    @staticmethod
    def _fill_list(count_p, items, values, setter) -> int:
        if len(values) > count_p.contents.value:
            count_p.contents.value = len(values)
            return INSUFFICIENT_SIZE
        for i, value in enumerate(values):
            setter(items, i, value)
        count_p.contents.value = len(values)
        return SUCCESS

    # -- entry points --------------------------------------------------------

    def _nvmlInit_v2(self) -> int:
        self.init_count += 1
        return SUCCESS

    def _nvmlShutdown(self) -> int:
        if self.init_count == 0:
            return UNINITIALIZED
        self.init_count -= 1
        return SUCCESS

    def _nvmlDeviceGetCount_v2(self, count_p) -> int:
        count_p.contents.value = len(self.devices)
        return SUCCESS

    def _nvmlDeviceGetHandleByIndex_v2(self, index, dev_p) -> int:
        i = index.value
        if i >= len(self.devices) or i in self.bad_indices:
            return INVALID_ARGUMENT
        dev_p.contents.value = self.devices[i].handle
        return SUCCESS

    def _nvmlDeviceGetMemoryInfo(self, h, mem_p) -> int:
        d = self._device(h)
        if d is None:
            return INVALID_ARGUMENT
        mem_p.contents.free = d.free
        mem_p.contents.used = d.used
        mem_p.contents.total = d.total
        return SUCCESS

    def _nvmlDeviceGetComputeRunningProcesses_v3(self, h, count_p, items) -> int:
        d = self._device(h)
        if d is None:
            return INVALID_ARGUMENT

        def setter(arr, i, proc):
            arr[i].pid, arr[i].usedGpuMemory = proc

        return self._fill_list(count_p, items, d.processes, setter)

    def _nvmlDeviceGetUtilizationRates(self, h, util_p) -> int:
        d = self._device(h)
        if d is None:
            return INVALID_ARGUMENT
        util_p.contents.gpu = d.gpu_util
        util_p.contents.memory = d.mem_util
        return SUCCESS

    def _nvmlDeviceGetEncoderUtilization(self, h, util_p, period_p) -> int:
        d = self._device(h)
        if d is None:
            return INVALID_ARGUMENT
        util_p.contents.value = d.enc_util
        period_p.contents.value = 167000
        return SUCCESS

    def _nvmlDeviceGetDecoderUtilization(self, h, util_p, period_p) -> int:
        d = self._device(h)
        if d is None:
            return INVALID_ARGUMENT
        util_p.contents.value = d.dec_util
        period_p.contents.value = 167000
        return SUCCESS

    def _nvmlDeviceGetVbiosVersion(self, h, buf, size) -> int:
        d = self._device(h)
        if d is None:
            return INVALID_ARGUMENT
        buf.value = d.vbios.encode()
        return SUCCESS

    def _nvmlDeviceGetActiveVgpus(self, h, count_p, items) -> int:
        d = self._device(h)
        if d is None:
            return INVALID_ARGUMENT

        def setter(arr, i, fv):
            arr[i] = fv.instance

        return self._fill_list(count_p, items, d.vgpus, setter)

    def _nvmlVgpuInstanceGetType(self, v, type_p) -> int:
        fv = self._vgpu(v)
        if fv is None:
            return INVALID_ARGUMENT
        type_p.contents.value = fv.type_id
        return SUCCESS

    def _nvmlVgpuTypeGetName(self, t, buf, size_p) -> int:
        if t.value not in self.vgpu_types:
            return INVALID_ARGUMENT
        name = self.vgpu_types[t.value][0].encode()
        buf.value = name
        size_p.contents.value = len(name) + 1
        return SUCCESS

    def _nvmlVgpuTypeGetMaxInstances(self, h, t, n_p) -> int:
        if self._device(h) is None or t.value not in self.vgpu_types:
            return INVALID_ARGUMENT
        n_p.contents.value = self.vgpu_types[t.value][1]
        return SUCCESS

    def _nvmlVgpuInstanceGetFrameRateLimit(self, v, limit_p) -> int:
        fv = self._vgpu(v)
        if fv is None:
            return INVALID_ARGUMENT
        limit_p.contents.value = fv.frame_rate_limit
        return SUCCESS

    def _nvmlVgpuInstanceGetVmDriverVersion(self, v, buf, size) -> int:
        fv = self._vgpu(v)
        if fv is None:
            return INVALID_ARGUMENT
        buf.value = fv.driver_version.encode()
        return SUCCESS

    def _nvmlVgpuInstanceGetVmID(self, v, buf, size, type_p) -> int:
        fv = self._vgpu(v)
        if fv is None:
            return INVALID_ARGUMENT
        buf.value = fv.vm_id.encode()
        type_p.contents.value = 1  # NVML_VGPU_VM_ID_UUID
        return SUCCESS


@pytest.fixture()
def fake() -> FakeNvml:
    """Two devices; device 0 hosts two vGPUs of one type, device 1 one."""
    nvml = FakeNvml(
        [
            FakeDevice(
                handle=0x1000,
                free=100,
                used=50,
                total=150,
                gpu_util=37,
                mem_util=12,
                enc_util=5,
                dec_util=9,
                processes=[(4242, 2048), (4343, 4096)],
                vgpus=[
                    FakeVgpu(11, type_id=5, vm_id="vm-a"),
                    FakeVgpu(12, type_id=5, frame_rate_limit=30, vm_id="vm-b"),
                ],
            ),
            FakeDevice(
                handle=0x2000,
                vbios="86.04.26.00.01",
                vgpus=[FakeVgpu(21, type_id=6, driver_version="470.82.01", vm_id="vm-c")],
            ),
        ]
    )
    nvml.vgpu_types = {5: ("GRID T4-4Q", 4), 6: ("GRID T4-8Q", 2)}
    return nvml
