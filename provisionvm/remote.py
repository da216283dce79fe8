"""Operator-side helpers: hand a host its settings and watch the run over SSH."""

import base64
import shlex
import time
from pathlib import Path

from fabric import Connection

from .markers import FINISHED, MARKER_NAMES, STARTED, SUCCEEDED, interpret_markers
from .types import RunOutcome
from .utils import LogStream, error, log

SSH_TIMEOUT = 300
WAIT_TIMEOUT = 600
WAIT_INTERVAL = 5
REMOTE_SETTINGS_NAME = "provision.json"
# bracket keeps pgrep from matching the shell that runs it
RUNNER_PATTERN = "[p]rovisionvm run"


def _connect(ip: str, user: str, port: int, timeout: int | None = None) -> Connection:
    connect_kwargs = {"look_for_keys": True}
    if timeout is not None:
        connect_kwargs["timeout"] = timeout
    return Connection(ip, user=user, port=port, connect_kwargs=connect_kwargs)


def _run_ssh(ip: str, cmd: str, user: str, port: int, show_output: bool) -> str:
    """Single SSH attempt - open connection, run cmd, return stdout."""
    with _connect(ip, user, port) as c:
        if show_output:
            stream = LogStream()
            result = c.run(cmd, hide=True, warn=True, in_stream=False,
                           out_stream=stream, err_stream=stream)
            stream.flush()
        else:
            result = c.run(cmd, hide=True, warn=True, in_stream=False)
        if result.failed:
            raise RuntimeError(result.stderr)
        return result.stdout


def ssh(ip: str, cmd: str, user: str = "ubuntu", port: int = 22, show_output: bool = False) -> str:
    """Run SSH command with up to 3 retries on transient connection resets."""
    from paramiko.ssh_exception import SSHException as ParamikoSSH

    for attempt in range(3):
        try:
            return _run_ssh(ip, cmd, user, port, show_output)
        except RuntimeError as e:
            error(f"SSH command failed: {e}")
        except ParamikoSSH as e:
            if "Error reading SSH protocol banner" in str(e) and attempt < 2:
                time.sleep(5)
                continue
            error(f"SSH connection failed: {e}")
    error("SSH connection failed after retries")


def ssh_write_file(ip: str, path: str, content: str, user: str = "ubuntu", port: int = 22, mode: str = "600"):
    encoded = base64.b64encode(content.encode()).decode()
    quoted = shlex.quote(path)
    ssh(
        ip,
        f"umask 077 && echo '{encoded}' | base64 -d > {quoted} && chmod {mode} {quoted}",
        user=user,
        port=port,
    )


def wait_for_ssh(ip: str, user: str = "ubuntu", port: int = 22, timeout: int = SSH_TIMEOUT):
    log(f"Waiting for SSH on '{ip}:{port}'...")
    start = time.time()
    while time.time() - start < timeout:
        try:
            with _connect(ip, user, port, timeout=5) as c:
                c.run("echo ok", hide=True, in_stream=False)
                log("SSH ready")
                return
        except Exception as e:
            elapsed = int(time.time() - start)
            log(f"SSH not ready yet ({elapsed}s, {type(e).__name__}), retrying...")
        time.sleep(5)
    error(f"SSH timeout after '{timeout}s'")


def push_settings(
    ip: str,
    settings_file: str | Path,
    *,
    user: str = "ubuntu",
    port: int = 22,
    markers_dir: str | None = None,
) -> str:
    """Upload settings and create the run markers before the first run.

    :return: Remote settings path
    """
    markers_dir = markers_dir or f"/home/{user}"
    remote_path = f"{markers_dir}/{REMOTE_SETTINGS_NAME}"
    wait_for_ssh(ip, user=user, port=port)

    log(f"Uploading settings to '{ip}:{remote_path}'...")
    ssh_write_file(ip, remote_path, Path(settings_file).read_text(), user=user, port=port)

    markers = " ".join(shlex.quote(f"{markers_dir}/{name}") for name in MARKER_NAMES)
    ssh(ip, f"touch {markers}", user=user, port=port)
    log(f"Created run markers in '{markers_dir}'")
    return remote_path


def remote_outcome(ip: str, *, user: str = "ubuntu", port: int = 22, markers_dir: str | None = None) -> RunOutcome:
    markers_dir = markers_dir or f"/home/{user}"
    checks = " ".join(
        f"test -e {shlex.quote(f'{markers_dir}/{name}')} && echo {name};"
        for name in MARKER_NAMES
    )
    script = (
        f"pgrep -f {shlex.quote(RUNNER_PATTERN)} > /dev/null && echo process; "
        f"{checks} true"
    )
    present = set(ssh(ip, script, user=user, port=port).split())
    return interpret_markers(
        process_running="process" in present,
        started_present=STARTED in present,
        finished_present=FINISHED in present,
        success_present=SUCCEEDED in present,
    )


def wait_for_done(
    ip: str,
    *,
    user: str = "ubuntu",
    port: int = 22,
    markers_dir: str | None = None,
    timeout: int = WAIT_TIMEOUT,
    interval: int = WAIT_INTERVAL,
) -> RunOutcome:
    """Poll until the run on ``ip`` has ended, or exit on timeout."""
    log(f"Waiting for provisioning on '{ip}'...")
    start = time.time()
    while True:
        outcome = remote_outcome(ip, user=user, port=port, markers_dir=markers_dir)
        if outcome not in ("pending", "running"):
            return outcome
        elapsed = int(time.time() - start)
        if elapsed > timeout:
            error(f"Provisioning on '{ip}' still '{outcome}' after {timeout}s")
        log(f"Provisioning '{outcome}' ({elapsed}s)...")
        time.sleep(interval)
