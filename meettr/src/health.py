"""
Process liveness checks used by the recording controller.

The controller polls the capture process at a fixed interval. How liveness
is probed differs per platform, so it is injected as a ProcessHealthCheck.
"""

import logging
import os
import sys
from typing import Optional

logger = logging.getLogger(__name__)


class ProcessHealthCheck:
    """Capability that answers whether a capture process is still alive."""

    def is_alive(self, process) -> bool:
        raise NotImplementedError


class SignalProbeHealthCheck(ProcessHealthCheck):
    """Probe the process with signal 0 (POSIX)."""

    def is_alive(self, process) -> bool:
        pid = getattr(process, "pid", None)
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True
        except OSError as e:
            logger.debug("Signal probe for pid %s failed: %s", pid, e)
            return False
        return True


class ExitCodeHealthCheck(ProcessHealthCheck):
    """Check the process handle's exit status without signalling it."""

    def is_alive(self, process) -> bool:
        if process is None:
            return False
        is_running = getattr(process, "is_running", None)
        if is_running is not None:
            return bool(is_running)
        return process.poll() is None


def default_health_check(platform: Optional[str] = None) -> ProcessHealthCheck:
    """Return the health check suited to ``platform`` (defaults to this one)."""
    platform = platform or sys.platform
    # os.kill on Windows terminates the target instead of probing it
    if platform.startswith("win"):
        return ExitCodeHealthCheck()
    return SignalProbeHealthCheck()
