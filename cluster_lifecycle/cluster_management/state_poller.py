"""Bounded-time polling of externally tracked state.

The deadline is computed once, from a monotonic clock, when polling starts. There's no
cancellation: callers that need it wrap the poll in their own outer timeout. `StatePoller.wake`
cuts the current sleep short so the next poll happens right away; it never stops the polling.
"""

import enum
import logging
import threading
import time
import typing as tp

from cluster_lifecycle.cluster_management import broker as cbroker
from cluster_lifecycle.cluster_management import errors

LOGGER = logging.getLogger(__name__)

T = tp.TypeVar("T")

DEFAULT_POLL_INTERVAL = 1.0


class Timeout(enum.Enum):
    """Sentinel returned when the timeout expires before the condition is met."""

    TIMED_OUT = "timed out"

    def __bool__(self) -> bool:
        return False


TIMED_OUT: tp.Final = Timeout.TIMED_OUT


class StatePoller:
    """Poll a probe at fixed interval until a condition is met or the timeout expires."""

    def __init__(self, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        if interval <= 0:
            msg = f"Invalid poll interval: {interval}"
            raise errors.BadArgumentsError(msg)
        self.interval = interval
        self._wakeup = threading.Event()

    def wake(self) -> None:
        """Interrupt the current sleep, the next poll happens immediately."""
        self._wakeup.set()

    def _sleep(self) -> None:
        if self._wakeup.wait(self.interval):
            LOGGER.debug("Sleep in polling loop interrupted")
        self._wakeup.clear()

    def poll(
        self,
        probe: tp.Callable[[], T],
        is_done: tp.Callable[[T], bool],
        timeout: float,
    ) -> T | Timeout:
        """Return the first probed value that satisfies `is_done`, or `TIMED_OUT`."""
        if timeout <= 0:
            msg = f"Invalid monitoring duration: {timeout}"
            raise errors.BadArgumentsError(msg)

        deadline = time.monotonic() + timeout
        while True:
            value = probe()
            if is_done(value):
                return value
            if time.monotonic() >= deadline:
                LOGGER.debug(f"Wait limit of {timeout}s exceeded, last value: {value}")
                return TIMED_OUT
            self._sleep()


def monitor_to_state(
    broker: cbroker.ResourceBroker,
    app_id: str,
    target: cbroker.AppState,
    timeout: float,
    *,
    poller: StatePoller | None = None,
) -> cbroker.InstanceReport | Timeout:
    """Wait for the application to reach the target state or any later state.

    Return the last report, or `TIMED_OUT` when the application doesn't get there in time. It is
    up to the caller to decide whether to kill the application.
    """
    if timeout <= 0:
        msg = f"Invalid monitoring duration: {timeout}"
        raise errors.BadArgumentsError(msg)

    poller = poller or StatePoller()
    LOGGER.debug(f"Waiting {timeout}s for application {app_id} to reach state {target.name}")

    def _probe() -> cbroker.InstanceReport:
        report = broker.get_report(app_id)
        LOGGER.debug(f"Queried status is {report.to_str()}")
        return report

    result = poller.poll(_probe, lambda r: r.state >= target, timeout)
    if result is not TIMED_OUT:
        LOGGER.debug(f"Application {app_id} in desired state (or higher): {result.state.name}")
    return result
