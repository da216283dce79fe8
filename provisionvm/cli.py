#!/usr/bin/env python3
"""Provision a VM with a policy-routed WireGuard tunnel.

Runs on the target host as root, except the `remote` commands which run
on the operator's machine.

Usage: provisionvm <noun> <verb> [options]

Examples:
    provisionvm run --config /home/ubuntu/provision.json
    provisionvm tunnel status
    provisionvm tunnel render
    provisionvm remote push 203.0.113.5 --config provision.json --port 10022
    provisionvm remote wait 203.0.113.5 --port 10022
"""

import os
import sys
from pathlib import Path

import cyclopts
from rich import print

from .config import DEFAULT_LOCK_PATH, Settings, load_settings
from .errors import ProvisionError
from .markers import FINISHED, STARTED, SUCCEEDED, RunMarkers, interpret_markers
from .network import Oracle, check_direct_connectivity, verify_tunneled
from .orchestrator import provision, run_lock
from .routing import read_routing_snapshot
from .service import TunnelService
from .utils import error, log, setup_logging, warn
from .wgconf import render_config, setup_wireguard

app = cyclopts.App(
    name="provisionvm", help="Provision a VM behind a WireGuard tunnel", sort_key=None
)

tunnel_app = cyclopts.App(name="tunnel", help="Control and inspect the tunnel", sort_key=1)
markers_app = cyclopts.App(name="markers", help="Inspect run markers", sort_key=2)
remote_app = cyclopts.App(name="remote", help="Operator-side commands over SSH", sort_key=3)

app.command(tunnel_app)
app.command(markers_app)
app.command(remote_app)


def _settings(config: str | None) -> Settings:
    try:
        return load_settings(config)
    except ProvisionError as e:
        error(str(e))


def _oracle(settings: Settings) -> Oracle:
    return Oracle(
        settings.oracle_url,
        probe_host=settings.probe_host,
        timeout=settings.oracle_timeout,
    )


@app.command(name="run")
def run(*, config: str | None = None, log_file: str | None = None, verbose: bool = False):
    """Run the full provisioning pass: check, stop tunnel, configure, restart, verify.

    :param config: Settings file (default: PROVISIONVM_CONFIG or provision.json)
    :param log_file: Persistent log file (default: from settings)
    :param verbose: Debug logging
    """
    settings = _settings(config)
    if log_file:
        settings.log_file = Path(log_file)
    setup_logging("DEBUG" if verbose else "INFO", log_file=settings.log_file)

    try:
        result = provision(settings)
    except ProvisionError as e:
        error(str(e))

    if not result.ok:
        error(f"Setup Error: {result.error}")
    print("[green]Provisioning complete[/green]")
    if result.tunneled:
        print(f"  Egress: {result.tunneled['ip']} ({result.tunneled['country']})")


@tunnel_app.command(name="stop")
def tunnel_stop(*, interface: str = "wg0", lock: str = DEFAULT_LOCK_PATH):
    """Disable auto-start and stop the tunnel.

    :param interface: WireGuard interface name
    :param lock: Run lock shared with `provisionvm run`
    """
    try:
        with run_lock(lock):
            TunnelService(interface).stop()
    except ProvisionError as e:
        error(str(e))


@tunnel_app.command(name="start")
def tunnel_start(*, interface: str = "wg0", lock: str = DEFAULT_LOCK_PATH):
    """Enable auto-start and start the tunnel.

    :param interface: WireGuard interface name
    :param lock: Run lock shared with `provisionvm run`
    """
    try:
        with run_lock(lock):
            TunnelService(interface).start()
    except ProvisionError as e:
        error(str(e))


@tunnel_app.command(name="status")
def tunnel_status(*, interface: str = "wg0"):
    """Show the tunnel unit state.

    :param interface: WireGuard interface name
    """
    service = TunnelService(interface)
    print(f"{service.unit}: {service.state().value}")


@tunnel_app.command(name="render")
def tunnel_render(*, config: str | None = None, write: bool = False):
    """Render the tunnel config from current routing state.

    Prints to stdout unless --write is given. Writing expects the tunnel to be down.

    :param config: Settings file
    :param write: Register the routing table and write the config file
    """
    settings = _settings(config)
    try:
        if write:
            with run_lock(settings.lock_path):
                if TunnelService(settings.tunnel.interface).is_running():
                    warn("Tunnel is running; the default route may already point into it")
                setup_wireguard(settings)
        else:
            snapshot = read_routing_snapshot()
            sys.stdout.write(render_config(snapshot, settings.tunnel))
    except ProvisionError as e:
        error(str(e))


@tunnel_app.command(name="check")
def tunnel_check(*, config: str | None = None):
    """Check the host egresses directly with its own identity.

    :param config: Settings file
    """
    settings = _settings(config)
    try:
        identity = check_direct_connectivity(_oracle(settings), settings.public_ip, settings.region)
    except ProvisionError as e:
        error(str(e))
    print(f"[green]Direct[/green]: {identity['ip']} ({identity['country']})")


@tunnel_app.command(name="verify")
def tunnel_verify(*, config: str | None = None, direct_ip: str | None = None):
    """Check egress leaves through the tunnel.

    :param config: Settings file
    :param direct_ip: Pre-tunnel egress IP (default: host public_ip from settings)
    """
    settings = _settings(config)
    try:
        identity = verify_tunneled(
            _oracle(settings), direct_ip or settings.public_ip, settings.region
        )
    except ProvisionError as e:
        error(str(e))
    print(f"[green]Tunneled[/green]: {identity['ip']} ({identity['country']})")


@markers_app.command(name="init")
def markers_init(*, config: str | None = None):
    """Create the run markers, as the first-boot hook does.

    :param config: Settings file
    """
    settings = _settings(config)
    RunMarkers(settings.markers_dir).create_all()
    log(f"Created run markers in '{settings.markers_dir}'")


@markers_app.command(name="status")
def markers_status(*, config: str | None = None):
    """Show which run markers are present and what they mean.

    :param config: Settings file
    """
    settings = _settings(config)
    present = RunMarkers(settings.markers_dir).present()
    for name, exists in present.items():
        print(f"  {'[yellow]present[/yellow]' if exists else '[dim]cleared[/dim]'}  {name}")
    outcome = interpret_markers(
        process_running=False,
        started_present=present[STARTED],
        finished_present=present[FINISHED],
        success_present=present[SUCCEEDED],
    )
    print(f"Last run: {outcome}")


@remote_app.command(name="push")
def remote_push(
    ip: str,
    *,
    config: str | None = None,
    user: str = "ubuntu",
    port: int = 22,
    markers_dir: str | None = None,
):
    """Upload settings and create run markers on a fresh host.

    :param ip: Host IP address
    :param config: Local settings file, validated before upload
    :param user: SSH user
    :param port: SSH port (e.g. a forwarded router port)
    :param markers_dir: Remote directory for settings and markers (default: /home/<user>)
    """
    from .config import config_path
    from .remote import push_settings

    settings_file = config_path(config)
    _settings(str(settings_file))
    remote_path = push_settings(ip, settings_file, user=user, port=port, markers_dir=markers_dir)
    print(f"  Settings: {remote_path}")
    print(f"  Run: sudo provisionvm run --config {remote_path}")


@remote_app.command(name="wait")
def remote_wait(
    ip: str,
    *,
    user: str = "ubuntu",
    port: int = 22,
    markers_dir: str | None = None,
    timeout: int = 600,
):
    """Wait for the provisioning run on a host to end and report its outcome.

    :param ip: Host IP address
    :param user: SSH user
    :param port: SSH port
    :param markers_dir: Remote marker directory (default: /home/<user>)
    :param timeout: Seconds to wait
    """
    from .remote import wait_for_done

    outcome = wait_for_done(ip, user=user, port=port, markers_dir=markers_dir, timeout=timeout)
    if outcome == "stopped":
        error(f"Provisioning on '{ip}' stopped without finishing")
    elif outcome == "failed":
        error(f"Provisioning on '{ip}' failed, see the log on the host")
    log(f"Provisioning on '{ip}' succeeded")


def main():
    setup_logging(os.getenv("PROVISIONVM_LOG_LEVEL", "INFO"))
    app()


if __name__ == "__main__":
    main()
