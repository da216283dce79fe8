"""Shared fixtures: fake systemctl, settings on temp paths, live-test gating."""

import base64
import subprocess
from pathlib import Path

import pytest

from provisionvm.config import Settings, TunnelConfig

PRIVATE_KEY = base64.b64encode(bytes(range(32))).decode()
PEER_KEY = base64.b64encode(bytes(range(32, 64))).decode()


def pytest_addoption(parser):
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run integration tests that talk to real network services",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--live"):
        return
    skip = pytest.mark.skip(reason="needs --live")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


class FakeSystemd:
    """Stands in for systemctl/pgrep.

    ``stop_delay``/``start_delay`` is how many is-active queries still see
    the old state after stop/start; None means the unit never changes.
    """

    def __init__(self, *, enabled=False, active=False, installed=True,
                 stop_delay=0, start_delay=0, busy_polls=0, fail_verbs=()):
        self.enabled = enabled
        self.active = active
        self.installed = installed
        self.stop_delay = stop_delay
        self.start_delay = start_delay
        self.busy_polls = busy_polls
        self.fail_verbs = set(fail_verbs)
        self.calls = []
        self._pending = None

    @property
    def mutations(self) -> list[str]:
        return [c[1] for c in self.calls
                if c[0] == "systemctl" and c[1] in ("enable", "disable", "start", "stop")]

    def which(self, name):
        return f"/usr/bin/{name}" if self.installed else None

    def _is_active(self) -> bool:
        if self._pending is not None:
            target, remaining = self._pending
            if remaining is None:
                return self.active
            if remaining > 0:
                self._pending = (target, remaining - 1)
                return self.active
            self.active = target
            self._pending = None
        return self.active

    def __call__(self, *args):
        self.calls.append(args)
        rc, stdout, stderr = 0, "", ""
        if args[0] == "pgrep":
            rc = 1
        elif args[1] == "list-jobs":
            if self.busy_polls is None or self.busy_polls > 0:
                stdout = "42 wg-quick@wg0.service start running\n"
                if self.busy_polls:
                    self.busy_polls -= 1
        elif args[1] == "is-enabled":
            rc = 0 if self.enabled else 1
        elif args[1] == "is-active":
            rc = 0 if self._is_active() else 3
        elif args[1] in self.fail_verbs:
            rc, stderr = 1, f"Failed to {args[1]} unit"
        elif args[1] == "enable":
            self.enabled = True
        elif args[1] == "disable":
            self.enabled = False
        elif args[1] == "start":
            self._pending = (True, self.start_delay)
        elif args[1] == "stop":
            self._pending = (False, self.stop_delay)
        return subprocess.CompletedProcess(args, rc, stdout, stderr)


@pytest.fixture
def tunnel_config() -> TunnelConfig:
    return TunnelConfig(
        private_key=PRIVATE_KEY,
        local_addresses=("10.8.0.2/32",),
        dns_servers=("1.1.1.1",),
        peer_public_key=PEER_KEY,
        peer_endpoint="vpn.example.com:51820",
    )


@pytest.fixture
def settings(tmp_path: Path, tunnel_config: TunnelConfig) -> Settings:
    markers_dir = tmp_path / "home"
    markers_dir.mkdir()
    return Settings(
        tunnel=tunnel_config,
        public_ip="203.0.113.5",
        region="JP",
        markers_dir=markers_dir,
        wg_config_path=tmp_path / "wireguard" / "wg0.conf",
        rt_tables_path=tmp_path / "iproute2" / "rt_tables",
        motd_path=tmp_path / "motd",
        log_file=tmp_path / "provisionvm.log",
        lock_path=tmp_path / "provisionvm.lock",
    )


@pytest.fixture
def settings_data() -> dict:
    return {
        "wireguard": {
            "private_key": PRIVATE_KEY,
            "address": ["10.8.0.2/32"],
            "dns": ["1.1.1.1"],
            "peer_public_key": PEER_KEY,
            "peer_endpoint": "vpn.example.com",
        },
        "host": {"public_ip": "203.0.113.5", "region": "jp"},
    }


@pytest.fixture
def systemd():
    """Factory for FakeSystemd instances."""
    return FakeSystemd
