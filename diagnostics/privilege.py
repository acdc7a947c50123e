"""
Elevation probe for the current process.
"""

import os
import sys
from dataclasses import dataclass
from typing import Optional

from shared.logging import get_logger

log = get_logger("diagnostics", "privilege")


def is_running_as_admin() -> bool:
    """
    Check whether this process runs with elevated privileges.

    Windows: the process token must be elevated (IsUserAnAdmin).
    Elsewhere: effective uid 0.
    """
    if sys.platform == "win32":
        import ctypes

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError) as e:
            log.warning("diagnostics.privilege.probe_failed", error=str(e))
            return False

    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0


@dataclass(frozen=True)
class PrivilegeContext:
    """Read-only view of whether the current process runs elevated."""
    elevated: bool

    @classmethod
    def detect(cls) -> "PrivilegeContext":
        ctx = cls(elevated=is_running_as_admin())
        log.info("diagnostics.privilege.detected", elevated=ctx.elevated)
        return ctx

    @classmethod
    def resolve(cls, elevated: Optional[bool] = None) -> "PrivilegeContext":
        """Use an explicit override when given, else probe the host."""
        if elevated is None:
            return cls.detect()
        return cls(elevated=elevated)
