"""Session lifecycle and the Device / Vgpu object API.

A :class:`Session` owns NVML's process-wide initialized state.  Devices
and vGPUs obtained from a session keep a reference to it and refuse to
query NVML once it has been closed::

    with Session() as s:
        for dev in s.get_all_devices():
            print(dev.memory_info(), [v.vm_id() for v in dev.get_all_vgpus()])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

import psutil

from . import calls
from .errors import NvmlError, SessionClosedError, UsernameLookupError, VgpuNotFoundError
from .models import (
    DeviceHandle,
    MemoryInfo,
    ProcessInfo,
    UtilizationInfo,
    VgpuHandle,
)
from .native import NvmlLibrary, default_library

logger = logging.getLogger(__name__)

_CLOSED_MSG = "NVML session already closed."


def _fatal(msg: str) -> SystemExit:
    logger.critical(msg)
    return SystemExit(msg)


class Session:
    """Initialized NVML state for this process.

    Parameters
    ----------
    library:
        Source of NVML entry points.  Defaults to the shared
        :class:`~vgpumon.native.PynvmlLibrary`.
    list_capacity:
        Initial number of entries allocated for list queries (running
        processes, active vGPUs).  Larger results grow the buffer once.

    Raises
    ------
    NvmlError
        If ``nvmlInit`` reports anything but success.
    """

    def __init__(
        self,
        library: Optional[NvmlLibrary] = None,
        *,
        list_capacity: int = calls.DEFAULT_LIST_CAPACITY,
    ) -> None:
        if list_capacity < 1:
            raise ValueError("list_capacity must be >= 1")
        self._lib = library if library is not None else default_library()
        self.list_capacity = int(list_capacity)
        self.active = False

        calls.nvml_init(self._lib)
        self.active = True
        logger.debug("NVML session opened")

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self.active:
            self.close()

    def close(self) -> None:
        """Shut NVML down.

        Closing twice is a programming error and terminates the process
        (:class:`SystemExit`), as does a failing ``nvmlShutdown``.
        """
        if not self.active:
            raise _fatal(_CLOSED_MSG)
        self.active = False
        try:
            calls.nvml_shutdown(self._lib)
        except NvmlError as e:
            raise _fatal(str(e)) from e
        logger.debug("NVML session closed")

    @property
    def library(self) -> NvmlLibrary:
        """The NVML library, or :class:`SessionClosedError` after close."""
        if not self.active:
            raise SessionClosedError(_CLOSED_MSG)
        return self._lib

    def device_count(self) -> int:
        return calls.device_get_count(self.library)

    def get_device(self, index: int) -> Device:
        """Return the device at zero-based *index*."""
        return Device(calls.device_get_handle_by_index(self.library, index), self)

    def get_all_devices(self) -> List[Device]:
        """Return every visible device in index order.

        Any failing lookup raises; a partial list is never returned.
        """
        count = self.device_count()
        return [self.get_device(i) for i in range(count)]


def _username(pid: int) -> str:
    try:
        return psutil.Process(pid).username()
    except psutil.Error as e:
        raise UsernameLookupError(f"Could not resolve the owner of process {pid}") from e


@dataclass(frozen=True)
class Device:
    """A physical GPU.  Compares equal to any device with the same handle."""

    handle: DeviceHandle
    session: Session = field(compare=False, repr=False)

    def get_all_vgpus(self) -> List[Vgpu]:
        """Active vGPU instances hosted by this device."""
        s = self.session
        handles = calls.device_get_active_vgpus(s.library, self.handle, s.list_capacity)
        return [Vgpu(h, s) for h in handles]

    def memory_info(self) -> MemoryInfo:
        return calls.device_get_memory_info(self.session.library, self.handle)

    def processes(self) -> List[ProcessInfo]:
        """Running compute processes, each with its owning OS user.

        Raises :class:`UsernameLookupError` if any owner cannot be
        resolved (e.g. the process exited in the meantime).
        """
        s = self.session
        procs = calls.device_get_compute_running_processes(s.library, self.handle, s.list_capacity)
        return [
            ProcessInfo(pid=pid, used_memory=used, username=_username(pid)) for pid, used in procs
        ]

    def utilization(self) -> UtilizationInfo:
        return calls.device_get_utilization_rates(self.session.library, self.handle)

    def encoder_utilization(self) -> int:
        return calls.device_get_encoder_utilization(self.session.library, self.handle)

    def decoder_utilization(self) -> int:
        return calls.device_get_decoder_utilization(self.session.library, self.handle)

    def vbios_version(self) -> str:
        return calls.device_get_vbios_version(self.session.library, self.handle)

    def max_instances(self, vgpu: Vgpu) -> int:
        """How many instances of *vgpu*'s type this device can host."""
        lib = self.session.library
        vgpu_type = calls.vgpu_instance_get_type(lib, vgpu.handle)
        return calls.vgpu_type_get_max_instances(lib, self.handle, vgpu_type)

    def current_instances(self) -> int:
        return len(self.get_all_vgpus())


@dataclass(frozen=True)
class Vgpu:
    """A vGPU instance.  Compares equal to any vGPU with the same handle."""

    handle: VgpuHandle
    session: Session = field(compare=False, repr=False)

    def frame_rate_limit(self) -> int:
        return calls.vgpu_instance_get_frame_rate_limit(self.session.library, self.handle)

    def type_name(self) -> str:
        lib = self.session.library
        return calls.vgpu_type_get_name(lib, calls.vgpu_instance_get_type(lib, self.handle))

    def driver_version(self) -> str:
        """Driver version reported by the guest VM."""
        return calls.vgpu_instance_get_vm_driver_version(self.session.library, self.handle)

    def vm_id(self) -> str:
        return calls.vgpu_instance_get_vm_id(self.session.library, self.handle)

    def get_device(self) -> Device:
        """Find the device hosting this vGPU.

        Scans the active vGPUs of every device of the owning session.
        Native errors during the scan propagate; :class:`VgpuNotFoundError`
        is raised when no device lists this instance.
        """
        for dev in self.session.get_all_devices():
            logger.debug("Scanning %r for vGPU %d", dev.handle, self.handle.handle)
            if self in dev.get_all_vgpus():
                return dev
        raise VgpuNotFoundError(f"No device hosts vGPU instance {self.handle.handle}")
