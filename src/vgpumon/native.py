"""Access to the NVML shared library.

The wrappers in :mod:`vgpumon.calls` never touch ``libnvidia-ml`` directly;
they ask an :class:`NvmlLibrary` for raw ctypes entry points by name and
for the init/shutdown status codes.  The production implementation,
:class:`PynvmlLibrary`, goes through *pynvml*.  Tests substitute an
in-memory implementation.
"""

from __future__ import annotations

import abc
import logging
import threading
from typing import Callable, Optional

import pynvml

from .errors import NvmlError, format_error

logger = logging.getLogger(__name__)


class NvmlLibrary(abc.ABC):
    """Source of NVML entry points.

    Entry points follow the C calling convention: they take ctypes
    arguments (out-parameters as ``ctypes.pointer`` objects or arrays) and
    return an ``nvmlReturn_t`` status as an ``int``.
    """

    @abc.abstractmethod
    def function(self, name: str) -> Callable[..., int]:
        """Return the entry point called *name*."""

    @abc.abstractmethod
    def error_string(self, code: int) -> str:
        """Return NVML's human-readable description of *code*."""

    def init(self) -> int:
        """Initialize NVML and return the status code."""
        return int(self.function("nvmlInit_v2")())

    def shutdown(self) -> int:
        """Shut NVML down and return the status code."""
        return int(self.function("nvmlShutdown")())


class PynvmlLibrary(NvmlLibrary):
    """
    Resolves entry points from ``libnvidia-ml`` through pynvml.

    Init and shutdown use pynvml's public ``nvmlInit``/``nvmlShutdown`` so
    its reference count stays in step with other pynvml users in the
    process.  Symbol lookup uses ``pynvml._nvmlGetFunctionPointer``; the
    supported nvidia-ml-py range is pinned in ``pyproject.toml``.
    """

    def init(self) -> int:
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            return e.value
        logger.debug("pynvml initialized NVML")
        return pynvml.NVML_SUCCESS

    def shutdown(self) -> int:
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            return e.value
        return pynvml.NVML_SUCCESS

    def function(self, name: str) -> Callable[..., int]:
        try:
            return pynvml._nvmlGetFunctionPointer(name)
        except pynvml.NVMLError as e:
            raise NvmlError(e.value, format_error(str(e))) from e

    def error_string(self, code: int) -> str:
        try:
            text = pynvml.nvmlErrorString(code)
        except pynvml.NVMLError:
            # Library not loaded: pynvml's built-in descriptions.
            text = str(pynvml.NVMLError(code))
        return text.decode(errors="replace") if isinstance(text, (bytes, bytearray)) else str(text)


_default_lock = threading.Lock()
_default: Optional[NvmlLibrary] = None


def default_library() -> NvmlLibrary:
    """Return the process-wide :class:`PynvmlLibrary`."""
    global _default
    with _default_lock:
        if _default is None:
            _default = PynvmlLibrary()
        return _default
