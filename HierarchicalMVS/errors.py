"""
Error Types
===========

Accelerator failures are fatal: they surface as ``FatalError`` and are only
turned into a process exit by the top-level driver. Host-side input problems
are ``InputError`` and readers usually log them and return ``None`` instead.
"""

import inspect
from typing import Optional


class HierarchicalMVSError(Exception):
    """Base class for all package errors"""


class InputError(HierarchicalMVSError):
    """Missing or malformed input file (camera, image, depth map)"""


class FatalError(HierarchicalMVSError):
    """Unrecoverable error; the driver terminates the process"""

    def __init__(self, message: str, location: Optional[str] = None):
        self.location = location
        if location:
            message = f"{message} in {location}"
        super().__init__(message)


class DeviceError(FatalError):
    """Accelerator allocation, transfer or launch failure"""


def call_site(depth: int = 2) -> str:
    """
    Describe the caller's source location as ``file:line (function)``.

    Args:
        depth: Number of frames to walk up from this function
    """
    frame = inspect.currentframe()
    try:
        for _ in range(depth):
            if frame is None or frame.f_back is None:
                break
            frame = frame.f_back
        if frame is None:
            return "<unknown>"
        info = inspect.getframeinfo(frame, context=0)
        return f"{info.filename}:{info.lineno} ({info.function})"
    finally:
        del frame
