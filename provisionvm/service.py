"""Tunnel service control through systemd, with every transition confirmed by polling."""

import shutil
import time

from .errors import (
    ServiceBusyTimeout,
    ServiceCommandError,
    StartTimeout,
    StopTimeout,
)
from .types import ServiceState
from .utils import log, run_proc

POLL_BUDGET = 30
POLL_INTERVAL = 1.0


class TunnelService:
    """wg-quick@<interface> unit controller.

    enable/start/stop return before the interface actually changes state,
    so each mutation is followed by polling ``is-active`` within a budget.
    """

    def __init__(
        self,
        interface: str = "wg0",
        *,
        poll_budget: int = POLL_BUDGET,
        poll_interval: float = POLL_INTERVAL,
        runner=run_proc,
        sleep=time.sleep,
        which=shutil.which,
    ):
        self.interface = interface
        self.unit = f"wg-quick@{interface}.service"
        self.poll_budget = poll_budget
        self.poll_interval = poll_interval
        self._run = runner
        self._sleep = sleep
        self._which = which

    def _query(self, *args) -> bool:
        return self._run("systemctl", *args, "--quiet", self.unit).returncode == 0

    def _mutate(self, verb: str) -> None:
        result = self._run("systemctl", verb, self.unit)
        if result.returncode != 0:
            raise ServiceCommandError(
                f"systemctl {verb} {self.unit} failed: {(result.stderr or '').strip()}"
            )

    def is_enabled(self) -> bool:
        return self._query("is-enabled")

    def is_active(self) -> bool:
        return self._query("is-active")

    def is_running(self) -> bool:
        """Active check that is safe on hosts without systemd."""
        return self._which("systemctl") is not None and self.is_active()

    def state(self) -> ServiceState:
        if self._which("systemctl") is None:
            return ServiceState.UNKNOWN
        enabled = self.is_enabled()
        active = self.is_active()
        if enabled and active:
            return ServiceState.ENABLED_RUNNING
        if enabled:
            return ServiceState.ENABLED_STOPPED
        if active:
            # running without auto-start: mid-stop or started by hand
            return ServiceState.UNKNOWN
        return ServiceState.DISABLED

    def _wait_until(self, predicate, waiting_msg: str, exc_type, timeout_msg: str) -> None:
        for _ in range(self.poll_budget):
            if predicate():
                return
            log(waiting_msg)
            self._sleep(self.poll_interval)
        if predicate():
            return
        raise exc_type(timeout_msg)

    def _busy(self) -> bool:
        jobs = self._run("systemctl", "list-jobs", "--no-legend", "--plain")
        if self.unit in (jobs.stdout or ""):
            return True
        return self._run("pgrep", "-x", "wg-quick").returncode == 0

    def wait_for_idle(self) -> None:
        """Wait for any pending unit job or running wg-quick to finish.

        Concurrent wg-quick invocations interleave route changes.
        """
        self._wait_until(
            lambda: not self._busy(),
            f"Waiting for pending '{self.unit}' operations...",
            ServiceBusyTimeout,
            f"Timeout: '{self.unit}' still busy after {self.poll_budget} checks",
        )

    def stop(self) -> None:
        """Disable auto-start and stop the tunnel. No-op when already down."""
        log("Disable auto start and stop WireGuard for update...")
        if self._which("wg-quick") is None:
            log("wg-quick not installed, nothing to stop")
            return
        self.wait_for_idle()

        if self.is_enabled():
            self._mutate("disable")

        if self.is_active():
            self._mutate("stop")
            self._wait_until(
                lambda: not self.is_active(),
                f"Waiting for WireGuard interface {self.interface} to be down...",
                StopTimeout,
                "Timeout: Failed to stop WireGuard service",
            )
        log("Disable auto start and stop WireGuard for update...done")

    def start(self) -> None:
        """Enable auto-start and start the tunnel. No-op when already up."""
        log("Enable auto start WireGuard...")
        if self._which("systemctl") is None:
            raise ServiceCommandError("systemctl not found")

        if not self.is_enabled():
            self._mutate("enable")

        if not self.is_active():
            self._mutate("start")
            self._wait_until(
                self.is_active,
                f"Waiting for WireGuard interface {self.interface} to be up...",
                StartTimeout,
                "Timeout: Failed to start WireGuard service",
            )
        log("Enable auto start WireGuard...done")
