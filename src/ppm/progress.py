"""
Rich progress rows for installs: one row per package while it moves through
fetching metadata, downloading, extracting and done.
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn

from .installer import InstallPhase

# Share of the bar filled when a phase starts.
PHASE_COMPLETION = {
    InstallPhase.METADATA: 0.1,
    InstallPhase.DOWNLOAD: 0.5,
    InstallPhase.EXTRACT: 0.85,
    InstallPhase.DONE: 1.0,
    InstallPhase.FAILED: 1.0,
}


class InstallProgress:
    """Installer progress callback rendering to a rich Console (stderr by default)."""

    def __init__(self, console: Console | None = None, *, transient: bool = True) -> None:
        self.console = console or Console(stderr=True)
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=25),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=self.console,
            transient=transient,
        )
        self._tasks: dict[str, TaskID] = {}

    def __enter__(self) -> "InstallProgress":
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.progress.stop()

    def active(self) -> list[str]:
        return [task.description for task in self.progress.tasks]

    def __call__(self, name: str, phase: InstallPhase, version: str | None = None) -> None:
        label = f"{name}@{version}" if version else name
        description = f"{label}: {phase.value}"

        task_id = self._tasks.get(name)
        if task_id is None:
            task_id = self.progress.add_task(description, total=1.0)
            self._tasks[name] = task_id
        self.progress.update(task_id, description=description, completed=PHASE_COMPLETION[phase])

        if phase in (InstallPhase.DONE, InstallPhase.FAILED):
            self.progress.remove_task(task_id)
            del self._tasks[name]
