"""Exception hierarchy and NVML status translation.

Every native call returns an ``nvmlReturn_t`` status code.  Wrappers in
:mod:`vgpumon.calls` pass that code through :func:`check_return`, which
raises :class:`NvmlError` for anything other than ``NVML_SUCCESS``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional

import pynvml

if TYPE_CHECKING:
    from .native import NvmlLibrary


class VgpumonError(RuntimeError):
    """Base class for every error raised by vgpumon."""


class NvmlError(VgpumonError):
    """A native call returned a non-success status.

    Attributes
    ----------
    code:
        The raw ``nvmlReturn_t`` value.
    """

    def __init__(self, code: int, message: Optional[str] = None) -> None:
        self.code = int(code)
        super().__init__(message or f"NVML error with code {self.code}")


class SessionClosedError(VgpumonError):
    """A query was issued on a session that has already been closed."""


class UsernameLookupError(VgpumonError):
    """The owner of a GPU process could not be resolved."""


class VgpuNotFoundError(VgpumonError):
    """No device of the session lists the vGPU instance as active."""


def format_error(text: str) -> str:
    """Return the user-facing message for an NVML error string.

    The native text is quoted and escaped to plain ASCII so that it can be
    embedded in log lines safely.
    """
    return f"NVML error: {json.dumps(text, ensure_ascii=True)}."


def check_return(library: NvmlLibrary, status: int) -> None:
    """Raise :class:`NvmlError` unless *status* is ``NVML_SUCCESS``."""
    if status == pynvml.NVML_SUCCESS:
        return None
    try:
        text = library.error_string(status)
    except Exception:
        raise NvmlError(status) from None
    raise NvmlError(status, format_error(text))
