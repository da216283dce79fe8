"""provisionvm - VM provisioning with a policy-routed WireGuard tunnel."""

from .config import Settings, TunnelConfig, load_settings
from .errors import (
    ConfigRenderError,
    ConfigWriteError,
    ConnectivityError,
    ProvisionError,
    ServiceError,
    VerificationError,
)
from .network import Oracle, check_direct_connectivity, verify_tunneled
from .orchestrator import Provisioner, RunResult, provision
from .service import TunnelService
from .types import EgressIdentity, RoutingSnapshot, ServiceState, Stage
from .wgconf import render_config, setup_wireguard

__all__ = [
    "Settings",
    "TunnelConfig",
    "load_settings",
    "ProvisionError",
    "ConnectivityError",
    "ServiceError",
    "ConfigRenderError",
    "ConfigWriteError",
    "VerificationError",
    "Oracle",
    "check_direct_connectivity",
    "verify_tunneled",
    "Provisioner",
    "RunResult",
    "provision",
    "TunnelService",
    "EgressIdentity",
    "RoutingSnapshot",
    "ServiceState",
    "Stage",
    "render_config",
    "setup_wireguard",
]
