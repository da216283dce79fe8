"""Exceptions raised by provisioning phases.

Core modules raise these; only the CLI turns them into an exit code.
"""


class ProvisionError(Exception):
    """Base class for every provisioning failure."""


class SettingsError(ProvisionError):
    """Settings file missing, unparseable or invalid."""


class CommandError(ProvisionError):
    def __init__(self, args: tuple, returncode: int, stderr: str = ""):
        self.cmd = args
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(
            f"Command '{' '.join(map(str, args))}' exited {returncode}{detail}"
        )


class LockError(ProvisionError):
    """Another provisioning run holds the run lock."""


class StepError(ProvisionError):
    def __init__(self, step: str, detail: str = ""):
        self.step = step
        super().__init__(f"Setup step '{step}' failed" + (f": {detail}" if detail else ""))


# -- connectivity --


class ConnectivityError(ProvisionError):
    """DNS, reachability or oracle failure, or an unexpected egress identity."""


class DnsUnavailable(ConnectivityError):
    pass


class OracleError(ConnectivityError):
    pass


class NotDirect(ConnectivityError):
    """Host is not egressing with its own public identity."""


# -- service --


class ServiceError(ProvisionError):
    pass


class ServiceCommandError(ServiceError):
    pass


class ServiceBusyTimeout(ServiceError):
    pass


class StopTimeout(ServiceError):
    pass


class StartTimeout(ServiceError):
    pass


# -- config --


class ConfigRenderError(ProvisionError):
    pass


class ConfigWriteError(ProvisionError):
    pass


# -- verification --


class VerificationError(ProvisionError):
    pass


class StillDirect(VerificationError):
    """Tunnel is up but egress still uses the direct address."""


class SameRegion(VerificationError):
    """Tunnel egress lands in the host's own region."""
