"""Setup steps applied between tunnel stop and start.

Each step is an opaque shell script. The orchestrator only cares that a
step finishes or raises StepError.
"""

import shlex
import subprocess
from textwrap import dedent

from .errors import StepError
from .utils import LogStream, log

BASE_PACKAGES = ["jq", "coreutils", "openresolv", "wireguard", "build-essential", "zsh"]


def run_script(script: str, *, user: str | None = None, step: str = "script") -> None:
    """Run a bash script, as ``user`` via a login shell when given.

    :raises StepError: If the script exits non-zero or cannot be started
    """
    if user:
        args = ["sudo", "-i", "-u", user, "bash", "-c", script]
    else:
        args = ["bash", "-c", script]
    stream = LogStream(prefix=f"[{step}] ")
    try:
        with subprocess.Popen(
            args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True
        ) as proc:
            for line in proc.stdout:
                stream.write(line)
            returncode = proc.wait()
    except OSError as e:
        raise StepError(step, str(e)) from e
    finally:
        stream.flush()
    if returncode != 0:
        raise StepError(step, f"exit status {returncode}")


def ensure_packages(settings) -> None:
    log("Ensure packages...")
    packages = " ".join(shlex.quote(p) for p in BASE_PACKAGES + settings.packages)
    script = dedent(f"""
        set -eu
        export DEBIAN_FRONTEND=noninteractive
        if ! [ -f /etc/needrestart/conf.d/50-autorestart.conf ]; then
            mkdir -p /etc/needrestart/conf.d
            echo "\\$nrconf{{restart}} = 'a';" >> /etc/needrestart/conf.d/50-autorestart.conf
        fi
        apt-get update
        apt-get install -y {packages}
    """).strip()
    run_script(script, step="packages")
    log("Ensure packages...done")


def setup_user(settings) -> None:
    log(f"Setup user '{settings.user}'...")
    run_script(f"chsh -s \"$(command -v zsh)\" {shlex.quote(settings.user)}", step="user")
    script = dedent("""
        set -eu
        touch "$HOME/.zshrc"
        if ! grep -q "compinit" "$HOME/.zshrc"; then
            echo "autoload -Uz compinit" >> "$HOME/.zshrc"
            echo "compinit" >> "$HOME/.zshrc"
        fi
        if ! [ -d "$HOME/.cargo" ]; then
            curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y
        fi
        if ! grep -q ".cargo/env" "$HOME/.zshrc"; then
            echo 'source "$HOME/.cargo/env"' >> "$HOME/.zshrc"
        fi
        . "$HOME/.cargo/env"
        rustup update
        rustup default stable
    """).strip()
    run_script(script, user=settings.user, step="user")
    log(f"Setup user '{settings.user}'...done")


STEPS = {
    "packages": ensure_packages,
    "user": setup_user,
}
