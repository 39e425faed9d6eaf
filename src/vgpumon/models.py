"""Handle types and immutable value snapshots returned by queries.

Handles wrap opaque NVML identifiers and compare by identifier.  The
snapshot types are plain frozen dataclasses; ``to_dict`` emits the field
names existing JSON consumers expect (``usedMemory``, ``gpuUtil``, ...).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

# ---------------------------------------------------------------------------
# Native handles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceHandle:
    """``nvmlDevice_t``: the device pointer value."""

    handle: int


@dataclass(frozen=True)
class VgpuHandle:
    """``nvmlVgpuInstance_t``."""

    handle: int


@dataclass(frozen=True)
class VgpuTypeHandle:
    """``nvmlVgpuTypeId_t``."""

    handle: int


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemoryInfo:
    """Framebuffer memory of a device, in bytes."""

    free: int
    used: int
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {"Free": self.free, "Used": self.used, "Total": self.total}


@dataclass(frozen=True)
class ProcessInfo:
    """A compute process running on a device.

    Attributes
    ----------
    pid:
        OS process id.
    used_memory:
        GPU memory held by the process (bytes).
    username:
        Owner of the process; empty until resolved by
        :meth:`vgpumon.Device.processes`.
    """

    pid: int
    used_memory: int
    username: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"pid": self.pid, "usedMemory": self.used_memory, "username": self.username}


@dataclass(frozen=True)
class UtilizationInfo:
    """Percent of the last sample period the GPU / its memory were busy."""

    gpu_util: int
    mem_util: int

    def to_dict(self) -> Dict[str, Any]:
        return {"gpuUtil": self.gpu_util, "memUtil": self.mem_util}


@dataclass(frozen=True)
class VgpuProcessInfo:
    """Per-process utilization sample of a process inside a vGPU guest."""

    name: str
    pid: int
    gpu_util: int  # SM (3D/compute)
    mem_util: int  # frame buffer
    enc_util: int
    dec_util: int
    time_stamp: int
    vgpu: VgpuHandle

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pid": self.pid,
            "gpuUtil": self.gpu_util,
            "memUtil": self.mem_util,
            "encUtil": self.enc_util,
            "decUtil": self.dec_util,
            "timeStamp": self.time_stamp,
            "vgpu": self.vgpu.handle,
        }
