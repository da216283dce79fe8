"""Host routing state: default route detection and the routing table registry."""

from pathlib import Path

from .errors import CommandError, ConfigRenderError, ConfigWriteError
from .types import RoutingSnapshot
from .utils import log, run_cmd


def parse_default_route(output: str) -> RoutingSnapshot:
    """Pick gateway and device from the first default route line.

    :param output: Output of ``ip route show table main``
    :raises ConfigRenderError: If there is no usable default route
    """
    for line in output.splitlines():
        tokens = line.split()
        if not tokens or tokens[0] != "default":
            continue
        fields = dict(zip(tokens[1:], tokens[2:]))
        gateway = fields.get("via")
        device = fields.get("dev")
        if not gateway or not device:
            raise ConfigRenderError(f"Default route lacks gateway or device: '{line.strip()}'")
        return {"default_gateway": gateway, "egress_interface": device}
    raise ConfigRenderError("No default route in the main routing table")


def read_routing_snapshot(runner=run_cmd) -> RoutingSnapshot:
    """Read the current default route of the main table.

    Must be called while the tunnel is down so the direct route is seen.
    """
    try:
        output = runner("ip", "route", "show", "table", "main")
    except CommandError as e:
        raise ConfigRenderError(f"Cannot read routing table: {e}") from e
    snapshot = parse_default_route(output)
    log(
        f"Default route via '{snapshot['default_gateway']}' "
        f"dev '{snapshot['egress_interface']}'"
    )
    return snapshot


def _registry_entries(text: str) -> list[tuple[str, str]]:
    entries = []
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) >= 2:
            entries.append((parts[0], parts[1]))
    return entries


def ensure_routing_table(path: str | Path, table_id: int = 2, name: str = "ssh") -> bool:
    """Register ``<table_id> <name>`` in the table-name registry once.

    :param path: Registry file, usually /etc/iproute2/rt_tables
    :return: True if the entry was appended, False if already present
    :raises ConfigRenderError: If the id or the name is bound to something else
    :raises ConfigWriteError: If the registry cannot be read or updated
    """
    path = Path(path)
    try:
        text = path.read_text() if path.exists() else ""
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigWriteError(f"Cannot read routing table registry '{path}': {e}") from e
    wanted = (str(table_id), name)
    for entry in _registry_entries(text):
        if entry == wanted:
            return False
        if entry[0] == wanted[0]:
            raise ConfigRenderError(f"Routing table id {table_id} already named '{entry[1]}' in '{path}'")
        if entry[1] == name:
            raise ConfigRenderError(f"Routing table '{name}' already has id {entry[0]} in '{path}'")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a") as f:
            if text and not text.endswith("\n"):
                f.write("\n")
            f.write(f"{table_id} {name}\n")
    except OSError as e:
        raise ConfigWriteError(f"Cannot update routing table registry '{path}': {e}") from e
    log(f"Registered routing table '{table_id} {name}' in '{path}'")
    return True
