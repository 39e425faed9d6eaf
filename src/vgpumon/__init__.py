"""vgpumon: GPU and vGPU telemetry on top of NVML.

The package is a thin, typed layer over the NVIDIA Management Library:

1. **Session** -- ``with Session() as s: ...`` owns NVML's init/shutdown
   state and hands out :class:`Device` objects.
2. **Device / Vgpu** -- object-style queries (memory, utilization,
   processes, vGPU metadata) that delegate to :mod:`vgpumon.calls`.
3. **calls** -- one function per NVML entry point, for callers that want
   to manage handles themselves.

Requires an NVIDIA driver and *pynvml* (``pip install nvidia-ml-py``).
"""

import logging

__version__: str = "0.1.0"

from typing import List

from .errors import (
    NvmlError,
    SessionClosedError,
    UsernameLookupError,
    VgpumonError,
    VgpuNotFoundError,
)
from .models import (
    DeviceHandle,
    MemoryInfo,
    ProcessInfo,
    UtilizationInfo,
    VgpuHandle,
    VgpuProcessInfo,
    VgpuTypeHandle,
)
from .session import Device, Session, Vgpu

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__: List[str] = [
    "Device",
    "DeviceHandle",
    "MemoryInfo",
    "NvmlError",
    "ProcessInfo",
    "Session",
    "SessionClosedError",
    "UsernameLookupError",
    "UtilizationInfo",
    "Vgpu",
    "VgpuHandle",
    "VgpuNotFoundError",
    "VgpuProcessInfo",
    "VgpuTypeHandle",
    "VgpumonError",
]
