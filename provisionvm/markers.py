"""Run marker files.

Markers are created before the first run and removed as the run passes
checkpoints, so a marker that survives a reboot tells the operator how far
the last run got.
"""

from pathlib import Path

from .types import RunOutcome
from .utils import log

STARTED = "root_setup_not_yet_started_once"
FINISHED = "root_setup_not_yet_finished_once"
SUCCEEDED = "root_setup_not_yet_success_once"
MARKER_NAMES = [STARTED, FINISHED, SUCCEEDED]


class RunMarkers:
    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path(self, name: str) -> Path:
        return self.directory / name

    def create_all(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        for name in MARKER_NAMES:
            self.path(name).touch()

    def _clear(self, name: str) -> None:
        path = self.path(name)
        if path.exists():
            path.unlink()
            log(f"Cleared marker '{path}'")

    def mark_started(self) -> None:
        self._clear(STARTED)

    def mark_finished(self) -> None:
        self._clear(FINISHED)

    def mark_succeeded(self) -> None:
        self._clear(SUCCEEDED)

    def present(self) -> dict[str, bool]:
        return {name: self.path(name).exists() for name in MARKER_NAMES}


def interpret_markers(
    process_running: bool,
    started_present: bool,
    finished_present: bool,
    success_present: bool,
) -> RunOutcome:
    """Derive the last run's outcome from marker presence.

    A run that has not cleared the started marker is pending; a live runner
    is running; otherwise the finished and success markers decide.
    """
    if started_present:
        return "pending"
    if process_running:
        return "running"
    if finished_present:
        return "stopped"
    if success_present:
        return "failed"
    return "succeeded"
