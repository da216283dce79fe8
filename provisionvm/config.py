"""Settings for a provisioning run, loaded from a JSON file and the environment."""

import base64
import binascii
import ipaddress
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigRenderError, SettingsError
from .types import ReporterName

DEFAULT_CONFIG_PATH = "provision.json"
DEFAULT_WG_PORT = 51820
DEFAULT_MTU = 1280
DEFAULT_KEEPALIVE = 25
DEFAULT_ORACLE_URL = "https://ipinfo.io/json"
DEFAULT_STEPS = ["packages", "user"]
DEFAULT_LOCK_PATH = "/run/provisionvm.lock"
REPORTERS = ["none", "sakura", "aws"]

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


def split_endpoint(endpoint: str) -> tuple[str, int]:
    """Split ``host[:port]`` (or ``[v6]:port``) into host and port.

    :return: (host, port), port defaults to 51820
    :raises ConfigRenderError: If host or port is malformed
    """
    endpoint = endpoint.strip()
    if endpoint.startswith("["):
        host, sep, rest = endpoint[1:].partition("]")
        if not sep:
            raise ConfigRenderError(f"Malformed peer endpoint: '{endpoint}'")
        port_text = rest[1:] if rest.startswith(":") else ""
        if rest and not rest.startswith(":"):
            raise ConfigRenderError(f"Malformed peer endpoint: '{endpoint}'")
    elif endpoint.count(":") == 1:
        host, port_text = endpoint.split(":")
    else:
        host, port_text = endpoint, ""

    if not host:
        raise ConfigRenderError("Peer endpoint host is empty")
    try:
        ipaddress.ip_address(host)
    except ValueError:
        if not _HOSTNAME_RE.match(host):
            raise ConfigRenderError(f"Invalid peer endpoint host: '{host}'")

    if not port_text:
        return host, DEFAULT_WG_PORT
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise ConfigRenderError(f"Invalid peer endpoint port: '{port_text}'")
    return host, int(port_text)


def _check_key(name: str, value: str) -> None:
    if not value:
        raise ConfigRenderError(f"WireGuard {name} is empty")
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigRenderError(f"WireGuard {name} is not valid base64")
    if len(raw) != 32:
        raise ConfigRenderError(f"WireGuard {name} must encode 32 bytes, got {len(raw)}")


@dataclass(frozen=True)
class TunnelConfig:
    """Inputs for one rendering of the tunnel config file."""

    private_key: str
    local_addresses: tuple[str, ...]
    dns_servers: tuple[str, ...]
    peer_public_key: str
    peer_endpoint: str
    mtu: int = DEFAULT_MTU
    keepalive_seconds: int = DEFAULT_KEEPALIVE
    interface: str = "wg0"
    ssh_port: int = 22
    table_id: int = 2
    table_name: str = "ssh"
    fwmark: int = 2

    def validate(self) -> None:
        """Reject incomplete or malformed tunnel inputs.

        :raises ConfigRenderError: On the first problem found
        """
        _check_key("private key", self.private_key)
        _check_key("peer public key", self.peer_public_key)
        if not self.local_addresses:
            raise ConfigRenderError("WireGuard address list is empty")
        for addr in self.local_addresses:
            try:
                ipaddress.ip_interface(addr)
            except ValueError:
                raise ConfigRenderError(f"Invalid interface address: '{addr}'")
            if "/" not in addr:
                raise ConfigRenderError(f"Interface address needs a prefix length: '{addr}'")
        for server in self.dns_servers:
            try:
                ipaddress.ip_address(server)
            except ValueError:
                raise ConfigRenderError(f"Invalid DNS server: '{server}'")
        if not self.peer_endpoint:
            raise ConfigRenderError("WireGuard peer endpoint is empty")
        split_endpoint(self.peer_endpoint)
        if not 576 <= self.mtu <= 9000:
            raise ConfigRenderError(f"MTU out of range: {self.mtu}")
        if self.keepalive_seconds < 0:
            raise ConfigRenderError(f"Keepalive must not be negative: {self.keepalive_seconds}")
        if not isinstance(self.interface, str) or not re.fullmatch(
            r"[A-Za-z0-9_=+.-]{1,15}", self.interface
        ):
            raise ConfigRenderError(f"Invalid interface name: '{self.interface}'")

    @property
    def endpoint(self) -> str:
        """Endpoint with the port made explicit."""
        host, port = split_endpoint(self.peer_endpoint)
        if ":" in host:
            return f"[{host}]:{port}"
        return f"{host}:{port}"

    @property
    def endpoint_host(self) -> str:
        return split_endpoint(self.peer_endpoint)[0]

    @classmethod
    def from_dict(cls, data: dict) -> "TunnelConfig":
        def as_list(key: str) -> tuple[str, ...]:
            value = data.get(key) or []
            if isinstance(value, str):
                value = [value]
            return tuple(str(v).strip() for v in value)

        return cls(
            private_key=str(data.get("private_key") or "").strip(),
            local_addresses=as_list("address"),
            dns_servers=as_list("dns"),
            peer_public_key=str(data.get("peer_public_key") or "").strip(),
            peer_endpoint=str(data.get("peer_endpoint") or "").strip(),
            mtu=int(data.get("mtu", DEFAULT_MTU)),
            keepalive_seconds=int(data.get("keepalive", DEFAULT_KEEPALIVE)),
            interface=data.get("interface", "wg0"),
        )


@dataclass
class StatusSettings:
    reporter: ReporterName = "none"
    zone: str | None = None
    server_id: str | None = None
    instance_id: str | None = None
    region: str | None = None


@dataclass
class Settings:
    """Everything a provisioning run needs, validated at load time."""

    tunnel: TunnelConfig
    public_ip: str | None = None
    region: str | None = None
    oracle_url: str = DEFAULT_ORACLE_URL
    probe_host: str | None = None
    oracle_timeout: float = 10.0
    packages: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=lambda: list(DEFAULT_STEPS))
    user: str = "ubuntu"
    markers_dir: Path = Path("/home/ubuntu")
    status: StatusSettings = field(default_factory=StatusSettings)
    wg_config_path: Path = Path("/etc/wireguard/wg0.conf")
    rt_tables_path: Path = Path("/etc/iproute2/rt_tables")
    motd_path: Path = Path("/etc/motd")
    log_file: Path = Path("/var/log/provisionvm.log")
    lock_path: Path = Path(DEFAULT_LOCK_PATH)


def _load_status(data: dict) -> StatusSettings:
    reporter = os.getenv("PROVISIONVM_STATUS_REPORTER") or data.get("reporter") or "none"
    if reporter not in REPORTERS:
        raise SettingsError(f"Unknown status reporter: '{reporter}'. Available: {', '.join(REPORTERS)}")
    status = StatusSettings(
        reporter=reporter,
        zone=data.get("zone"),
        server_id=data.get("server_id"),
        instance_id=data.get("instance_id"),
        region=data.get("region"),
    )
    if reporter == "sakura" and not (status.zone and status.server_id):
        raise SettingsError("Status reporter 'sakura' needs 'zone' and 'server_id'")
    if reporter == "aws" and not status.instance_id:
        raise SettingsError("Status reporter 'aws' needs 'instance_id'")
    return status


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SettingsError(f"Settings section '{key}' must be an object")
    return value


def _text(section: dict, key: str, name: str, default: str | None = None) -> str | None:
    value = section.get(key, default)
    if value is not None and not isinstance(value, str):
        raise SettingsError(f"Setting '{name}' must be a string, got {type(value).__name__}")
    return value


def _names(data: dict, key: str, default: list[str]) -> list[str]:
    value = data.get(key, default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise SettingsError(f"Setting '{key}' must be a list of strings")
    return list(value)


def parse_settings(data: dict) -> Settings:
    """Build and validate Settings from decoded JSON.

    :raises SettingsError: If a section is missing or a value is invalid
    """
    from .steps import STEPS

    if not isinstance(data.get("wireguard"), dict):
        raise SettingsError("Settings need a 'wireguard' section")
    try:
        tunnel = TunnelConfig.from_dict(data["wireguard"])
    except (TypeError, ValueError) as e:
        raise SettingsError(f"Invalid 'wireguard' section: {e}") from e
    try:
        tunnel.validate()
    except ConfigRenderError as e:
        raise SettingsError(str(e)) from e

    host = _section(data, "host")
    public_ip = _text(host, "public_ip", "host.public_ip")
    if public_ip:
        try:
            ipaddress.ip_address(public_ip)
        except ValueError:
            raise SettingsError(f"Invalid host public_ip: '{public_ip}'")
    region = _text(host, "region", "host.region")

    steps = _names(data, "steps", DEFAULT_STEPS)
    unknown = [s for s in steps if s not in STEPS]
    if unknown:
        raise SettingsError(f"Unknown setup steps: {', '.join(unknown)}. Available: {', '.join(STEPS)}")

    oracle = _section(data, "oracle")
    try:
        oracle_timeout = float(oracle.get("timeout", 10))
    except (TypeError, ValueError):
        raise SettingsError(f"Invalid oracle timeout: '{oracle.get('timeout')}'")
    user = _text(data, "user", "user", "ubuntu")
    paths = _section(data, "paths")

    settings = Settings(
        tunnel=tunnel,
        public_ip=public_ip,
        region=(region or "").upper() or None,
        oracle_url=_text(oracle, "url", "oracle.url", DEFAULT_ORACLE_URL),
        probe_host=_text(oracle, "probe_host", "oracle.probe_host"),
        oracle_timeout=oracle_timeout,
        packages=_names(data, "packages", []),
        steps=steps,
        user=user,
        markers_dir=Path(_text(data, "markers_dir", "markers_dir", f"/home/{user}")),
        status=_load_status(_section(data, "status")),
    )
    for key in ("wg_config_path", "rt_tables_path", "motd_path", "log_file", "lock_path"):
        if key in paths:
            setattr(settings, key, Path(_text(paths, key, f"paths.{key}")))
    if os.getenv("PROVISIONVM_LOG_FILE"):
        settings.log_file = Path(os.environ["PROVISIONVM_LOG_FILE"])
    if not settings.oracle_url.startswith("https://"):
        raise SettingsError(f"Oracle URL must use https: '{settings.oracle_url}'")
    return settings


def config_path(path: str | Path | None = None) -> Path:
    load_dotenv()
    return Path(path or os.getenv("PROVISIONVM_CONFIG", DEFAULT_CONFIG_PATH))


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from JSON file.

    :param path: Settings file (default: PROVISIONVM_CONFIG or provision.json)
    :raises SettingsError: If the file is missing, unparseable or invalid
    """
    path = config_path(path)
    if not path.exists():
        raise SettingsError(f"Settings file not found: '{path}'")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise SettingsError(f"Invalid JSON in '{path}': {e}")
    if not isinstance(data, dict):
        raise SettingsError(f"Settings file '{path}' must hold a JSON object")
    return parse_settings(data)
