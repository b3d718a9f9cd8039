"""Shared default constants for the cadenza library."""

from enum import IntEnum

# Seconds between checks for pending signals and idle status. This is not the
# idle timeout itself, only how often the runtime looks at it.
IDLE_CHECK_INTERVAL: float = 5.0

DEFAULT_IDLE_TIMEOUT: float = IDLE_CHECK_INTERVAL * 2

DEFAULT_PREFETCH: int = 10

# Autoscaler throttle back-off: each failed child adds THROTTLE_FACTOR seconds
# to the base throttle interval, up to THROTTLE_MAX steps.
THROTTLE_FACTOR: float = 2.0
THROTTLE_MAX: int = 16


class ExitCode(IntEnum):
    """Process exit statuses; the only control signal a supervisor consumes."""

    OK = 0
    FAILURE = 1
    SOFTWARE = 70  # sysexits EX_SOFTWARE

# Seconds a freshly started work process may take to import its task.
WORK_PROCESS_STARTUP_TIMEOUT: float = 60.0
