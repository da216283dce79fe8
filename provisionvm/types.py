"""Type definitions for provisionvm."""

from enum import Enum
from typing import Literal, TypedDict

ReporterName = Literal["none", "sakura", "aws"]
StatusName = Literal["running", "failed", "done"]
RunOutcome = Literal["pending", "running", "stopped", "failed", "succeeded"]


class ServiceState(Enum):
    """Tunnel unit state as observed through systemctl."""

    UNKNOWN = "unknown"
    DISABLED = "disabled"
    ENABLED_STOPPED = "enabled-stopped"
    ENABLED_RUNNING = "enabled-running"


class Stage(Enum):
    """Provisioning run stages, in order."""

    INIT = "init"
    PRECONDITION_CHECKED = "precondition-checked"
    TUNNEL_STOPPED = "tunnel-stopped"
    CONFIGURED = "configured-and-other-setup-applied"
    TUNNEL_STARTED = "tunnel-started"
    VERIFIED = "verified"
    DONE = "done"


class RoutingSnapshot(TypedDict):
    """Default route of the main table, read before the tunnel comes up."""

    default_gateway: str
    egress_interface: str


class EgressIdentity(TypedDict):
    """Public identity reported by the IP/geolocation oracle."""

    ip: str
    country: str
