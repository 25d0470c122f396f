"""Progress bookkeeping and a Rich-based progress display."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn

from .models import ExportPhase, ExportProgress, ExportSnapshot, ExportState

__all__ = ["ProgressTracker", "RichProgressListener"]

_PHASE_LABELS = {
    ExportPhase.CAPTURING: "Capturing",
    ExportPhase.ENCODING: "Encoding",
    ExportPhase.FINALIZING: "Finalizing",
}


class ProgressTracker:
    """
    Monotonic progress for one export run.

    Percentages never go down, and stay below 100 until the finalizing phase.
    """

    def __init__(self) -> None:
        self._current: Optional[ExportProgress] = None

    @property
    def current(self) -> Optional[ExportProgress]:
        return self._current

    def reset(self) -> None:
        self._current = None

    def advance(self, percent: int, phase: ExportPhase) -> ExportProgress:
        value = max(0, min(100, int(percent)))
        if phase is not ExportPhase.FINALIZING:
            value = min(value, 99)
        if self._current is not None:
            value = max(value, self._current.percent)
        self._current = ExportProgress(percent=value, phase=phase)
        return self._current


class RichProgressListener:
    """Render orchestrator snapshots on a ``rich.progress.Progress`` bar."""

    def __init__(self, console: Console | None = None, *, transient: bool = False) -> None:
        self.console = console or Console(highlight=False)
        self.transient = transient
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def _ensure_started(self) -> Progress:
        if self._progress is None:
            self._progress = Progress(
                TextColumn("[bold cyan]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=self.console,
                transient=self.transient,
            )
            self._progress.start()
            self._task = self._progress.add_task("Exporting", total=100)
        return self._progress

    def _stop(self) -> None:
        if self._progress is not None:
            self._progress.stop()
        self._progress = None
        self._task = None

    def __call__(self, snapshot: ExportSnapshot) -> None:
        if snapshot.state is ExportState.IDLE:
            self._stop()
            return
        progress = self._ensure_started()
        assert self._task is not None
        if snapshot.state is ExportState.SUCCEEDED:
            progress.update(self._task, completed=100, description="[green]Exported")
            self._stop()
            return
        if snapshot.state is ExportState.FAILED:
            progress.update(self._task, description="[red]Export failed")
            self._stop()
            return
        if snapshot.progress is not None:
            progress.update(
                self._task,
                completed=snapshot.progress.percent,
                description=_PHASE_LABELS[snapshot.progress.phase],
            )
