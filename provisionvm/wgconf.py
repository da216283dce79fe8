"""WireGuard config rendering with SSH-preserving policy routing."""

import os
import tempfile
from pathlib import Path
from textwrap import dedent

from .config import Settings, TunnelConfig
from .errors import ConfigRenderError, ConfigWriteError
from .routing import ensure_routing_table, read_routing_snapshot
from .types import RoutingSnapshot
from .utils import log, run_cmd

ALLOWED_IPS = "0.0.0.0/0, ::/0"
IPTABLES = "/sbin/iptables"


def routing_rules(snapshot: RoutingSnapshot, cfg: TunnelConfig) -> list[tuple[str, str]]:
    """Forward (PostUp) and inverse (PreDown) command pairs, in PostUp order.

    Marked packets go to the carve-out table whose default route is the
    pre-tunnel gateway, so replies from the SSH port bypass the tunnel.
    """
    gateway = snapshot.get("default_gateway")
    device = snapshot.get("egress_interface")
    if not gateway or not device:
        raise ConfigRenderError("Routing snapshot lacks default gateway or interface")

    route = f"default via {gateway} dev {device} table {cfg.table_name}"
    rule = f"fwmark {cfg.fwmark:#x} table {cfg.table_name}"
    mark = (
        f"OUTPUT -t mangle -o {cfg.interface} -p tcp --sport {cfg.ssh_port} "
        f"-j MARK --set-mark {cfg.fwmark}"
    )
    return [
        (f"ip route add {route}", f"ip route del {route} || true"),
        (f"ip rule add {rule}", f"ip rule del {rule} || true"),
        (f"{IPTABLES} -A {mark}", f"{IPTABLES} -D {mark} || true"),
    ]


def render_config(snapshot: RoutingSnapshot, cfg: TunnelConfig) -> str:
    """Render wg-quick config text. Output depends only on the arguments.

    :raises ConfigRenderError: If a required field is missing or malformed
    """
    cfg.validate()
    rules = routing_rules(snapshot, cfg)
    post_up = "\n".join(f"PostUp = {up}" for up, _ in rules)
    pre_down = "\n".join(f"PreDown = {down}" for _, down in reversed(rules))

    interface = dedent(f"""
        [Interface]
        PrivateKey = {cfg.private_key}
        Address = {",".join(cfg.local_addresses)}
    """).strip()
    if cfg.dns_servers:
        interface += f"\nDNS = {','.join(cfg.dns_servers)}"
    interface += f"\nMTU = {cfg.mtu}"

    peer = dedent(f"""
        [Peer]
        PublicKey = {cfg.peer_public_key}
        Endpoint = {cfg.endpoint}
        PersistentKeepalive = {cfg.keepalive_seconds}
        AllowedIPs = {ALLOWED_IPS}
    """).strip()

    return "\n\n".join([interface, post_up, pre_down, peer]) + "\n"


def write_config(text: str, path: str | Path) -> None:
    """Atomically replace the config file with owner-only permissions.

    :raises ConfigWriteError: On any filesystem failure
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        with os.fdopen(fd, "w") as f:
            os.fchmod(f.fileno(), 0o600)
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise ConfigWriteError(f"Cannot write '{path}': {e}") from e
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)


def setup_wireguard(settings: Settings, runner=run_cmd) -> Path:
    """Regenerate the tunnel config from current routing state.

    Must run while the tunnel is down.
    """
    log("Setup WireGuard...")
    cfg = settings.tunnel
    cfg.validate()
    snapshot = read_routing_snapshot(runner)
    ensure_routing_table(settings.rt_tables_path, cfg.table_id, cfg.table_name)
    write_config(render_config(snapshot, cfg), settings.wg_config_path)
    log(f"Setup WireGuard...done ('{settings.wg_config_path}')")
    return settings.wg_config_path
