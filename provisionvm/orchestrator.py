"""Provisioning run: stop tunnel, reconfigure, always restart, then verify.

Stages advance Init -> PreconditionChecked -> TunnelStopped ->
Configured -> TunnelStarted -> Verified -> Done. The first error is kept
as the run's failure reason. Tunnel start runs on every exit path of the
setup region, since the tunnel may be the only way back into the host.
"""

import fcntl
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .config import Settings
from .errors import LockError, ProvisionError
from .markers import RunMarkers
from .network import (
    Oracle,
    check_direct_connectivity,
    check_endpoint_resolvable,
    verify_tunneled,
)
from .service import TunnelService
from .status import NullReporter, StatusReporter, get_reporter, notify
from .steps import STEPS
from .types import EgressIdentity, Stage, StatusName
from .utils import log, logger
from .wgconf import setup_wireguard


@contextmanager
def run_lock(path: str | Path):
    """Hold an exclusive advisory lock for the duration of a run.

    :raises LockError: If another run holds the lock
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(f"Another provisioning run holds '{path}'")
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@dataclass
class RunResult:
    stage: Stage = Stage.INIT
    error: ProvisionError | None = None
    cleanup_error: ProvisionError | None = None
    verify_error: ProvisionError | None = None
    direct: EgressIdentity | None = None
    tunneled: EgressIdentity | None = None
    start_attempts: int = 0
    failed_steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.stage is Stage.DONE

    def fail(self, exc: ProvisionError) -> None:
        if self.error is None:
            self.error = exc


class Provisioner:
    def __init__(
        self,
        settings: Settings,
        *,
        service: TunnelService | None = None,
        oracle: Oracle | None = None,
        steps: dict | None = None,
        reporter: StatusReporter | None = None,
        markers: RunMarkers | None = None,
        configure=setup_wireguard,
    ):
        self.settings = settings
        self.service = service or TunnelService(settings.tunnel.interface)
        self.oracle = oracle or Oracle(
            settings.oracle_url,
            probe_host=settings.probe_host,
            timeout=settings.oracle_timeout,
        )
        self.steps = STEPS if steps is None else steps
        self.reporter = reporter or NullReporter()
        self.markers = markers or RunMarkers(settings.markers_dir)
        self.configure = configure

    def _notify(self, status: StatusName) -> None:
        notify(
            status,
            self.reporter,
            log_file=self.settings.log_file,
            motd_path=self.settings.motd_path,
        )

    def _check_precondition(self, result: RunResult) -> None:
        result.direct = check_direct_connectivity(
            self.oracle, self.settings.public_ip, self.settings.region
        )
        check_endpoint_resolvable(self.settings.tunnel.endpoint_host)

    def _apply(self, result: RunResult) -> None:
        # With the tunnel up the oracle sees the tunnel, so check after stop
        tunnel_up = self.service.is_running()
        if tunnel_up:
            log("Tunnel is up from a previous run, checking connectivity after stop")
        else:
            self._check_precondition(result)
            result.stage = Stage.PRECONDITION_CHECKED

        self.service.stop()
        if tunnel_up:
            self._check_precondition(result)
        result.stage = Stage.TUNNEL_STOPPED

        self.configure(self.settings)
        for name in self.settings.steps:
            try:
                self.steps[name](self.settings)
            except ProvisionError:
                result.failed_steps.append(name)
                raise
        result.stage = Stage.CONFIGURED

    def _start_tunnel(self, result: RunResult) -> bool:
        result.start_attempts += 1
        try:
            self.service.start()
        except ProvisionError as e:
            logger.error(f"Tunnel start failed: {e}")
            result.cleanup_error = e
            result.fail(e)
            return False
        except Exception as e:
            logger.exception(f"Unexpected tunnel start error: {e}")
            result.cleanup_error = ProvisionError(f"Unexpected {type(e).__name__}: {e}")
            result.fail(result.cleanup_error)
            return False
        if result.error is None:
            result.stage = Stage.TUNNEL_STARTED
        return True

    def _verify(self, result: RunResult) -> None:
        direct = result.direct or {}
        direct_ip = direct.get("ip") or self.settings.public_ip
        home_region = self.settings.region or direct.get("country")
        try:
            result.tunneled = verify_tunneled(self.oracle, direct_ip, home_region)
        except ProvisionError as e:
            logger.error(f"Tunnel verification failed: {e}")
            result.verify_error = e
            result.fail(e)
            return
        except Exception as e:
            logger.exception(f"Unexpected verification error: {e}")
            result.verify_error = ProvisionError(f"Unexpected {type(e).__name__}: {e}")
            result.fail(result.verify_error)
            return
        if result.error is None:
            result.stage = Stage.VERIFIED

    def run(self) -> RunResult:
        result = RunResult()
        self.markers.mark_started()
        self._notify("running")
        try:
            self._apply(result)
        except ProvisionError as e:
            logger.error(f"Setup Error: {e}")
            result.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected setup error: {e}")
            result.fail(ProvisionError(f"Unexpected {type(e).__name__}: {e}"))
        finally:
            started = self._start_tunnel(result)

        if started:
            self._verify(result)
        self.markers.mark_finished()

        if result.error is None:
            result.stage = Stage.DONE
            self.markers.mark_succeeded()
            self._notify("done")
            log("Setup complete")
        else:
            self._notify("failed")
            logger.error(f"Setup failed at stage '{result.stage.value}': {result.error}")
        return result


def provision(settings: Settings) -> RunResult:
    """Run one provisioning pass under the run lock."""
    with run_lock(settings.lock_path):
        return Provisioner(settings, reporter=get_reporter(settings)).run()
