"""
Host summary embedded in every report and served by the API.
"""

import getpass
import os
import platform
import socket
import sys
from typing import Optional

from shared.logging import get_logger

log = get_logger("diagnostics", "system_info")

_GIB = 1024 ** 3


def _memory_windows() -> tuple[Optional[int], Optional[int]]:
    import ctypes

    class MEMORYSTATUSEX(ctypes.Structure):
        _fields_ = [
            ("dwLength", ctypes.c_ulong),
            ("dwMemoryLoad", ctypes.c_ulong),
            ("ullTotalPhys", ctypes.c_ulonglong),
            ("ullAvailPhys", ctypes.c_ulonglong),
            ("ullTotalPageFile", ctypes.c_ulonglong),
            ("ullAvailPageFile", ctypes.c_ulonglong),
            ("ullTotalVirtual", ctypes.c_ulonglong),
            ("ullAvailVirtual", ctypes.c_ulonglong),
            ("sullAvailExtendedVirtual", ctypes.c_ulonglong),
        ]

    status = MEMORYSTATUSEX()
    status.dwLength = ctypes.sizeof(MEMORYSTATUSEX)
    if not ctypes.windll.kernel32.GlobalMemoryStatusEx(ctypes.byref(status)):
        return None, None
    return status.ullTotalPhys, status.ullAvailPhys


def _memory_posix() -> tuple[Optional[int], Optional[int]]:
    try:
        page = os.sysconf("SC_PAGE_SIZE")
        total = os.sysconf("SC_PHYS_PAGES") * page
    except (ValueError, OSError, AttributeError):
        return None, None
    try:
        available = os.sysconf("SC_AVPHYS_PAGES") * page
    except (ValueError, OSError):
        available = None
    return total, available


def memory_bytes() -> tuple[Optional[int], Optional[int]]:
    """(total, available) physical memory in bytes, None when unknown."""
    try:
        if sys.platform == "win32":
            return _memory_windows()
        return _memory_posix()
    except Exception as e:
        log.warning("diagnostics.system_info.memory_probe_failed", error=str(e))
        return None, None


def _username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "Unknown"


def _gib(value: Optional[int]) -> Optional[float]:
    return round(value / _GIB, 2) if value is not None else None


def collect_system_info(is_admin: bool) -> dict:
    """Snapshot of the host the diagnostics ran on."""
    total, available = memory_bytes()
    return {
        "os_version": platform.platform() or "Unknown",
        "computer_name": socket.gethostname() or "Unknown",
        "username": _username(),
        "is_admin": is_admin,
        "cpu_info": platform.processor() or platform.machine() or "Unknown",
        "cpu_count": os.cpu_count(),
        "total_memory_gb": _gib(total),
        "available_memory_gb": _gib(available),
    }
