"""
Live display of a download batch, built on the Rich library.

One bar covers a whole album or playlist. Each track contributes its
transfer fraction, so the bar moves while large files stream instead of
jumping once per finished track.

Usage:
    from nautune.core.progress import BatchProgress

    with BatchProgress("Kind of Blue", ["t1", "t2"]) as batch:
        batch.advance("t1", 0.5)
        batch.finish("t1")
        batch.fail("t2")
"""

from rich import get_console
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn
from rich.theme import Theme


BATCH_THEME = Theme({
    "bar.back": "grey23",
    "bar.complete": "rgb(0,164,220)",
    "bar.finished": "rgb(114,156,31)",
    "bar.pulse": "rgb(0,164,220)",
})

TITLE_WIDTH = 24


def _shorten(title: str, width: int = TITLE_WIDTH) -> str:
    if len(title) <= width:
        return title.ljust(width)
    return title[: width - 1] + "…"


class BatchProgress:
    """
    Progress of a fixed set of tracks.

    Tracks already on disk when the batch starts should be reported with
    `skip()`; they count towards the bar but are shown separately.

    Example:
        Kind of Blue             ✓ 3  ✗ 1  ⊘ 1  ━━━━━━━━━━━━━━━━━━━━  80% 0:00:41
    """

    def __init__(self, title: str, track_ids: list[str]) -> None:
        self.title = title
        self._fractions: dict[str, float] = {track_id: 0.0 for track_id in track_ids}
        self._settled: dict[str, str] = {}

        self.console = get_console()
        self.progress = Progress(
            TextColumn("[white]{task.description}"),
            TextColumn("{task.fields[counts]}"),
            BarColumn(bar_width=40),
            TextColumn("[white]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=self.console,
        )
        self._task: TaskID | None = None

    def __enter__(self) -> "BatchProgress":
        self.console.push_theme(BATCH_THEME)
        self.progress.start()
        self._task = self.progress.add_task(
            _shorten(self.title), total=max(len(self._fractions), 1), counts=self._counts()
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.progress.stop()
        self.console.pop_theme()

    @property
    def pending(self) -> list[str]:
        """Tracks that have not finished, failed or been skipped."""
        return [track_id for track_id in self._fractions if track_id not in self._settled]

    @property
    def done(self) -> bool:
        return not self.pending

    def count(self, outcome: str) -> int:
        return sum(1 for value in self._settled.values() if value == outcome)

    def advance(self, track_id: str, fraction: float) -> None:
        if track_id in self._settled or track_id not in self._fractions:
            return
        self._fractions[track_id] = min(max(fraction, 0.0), 1.0)
        self._refresh()

    def finish(self, track_id: str) -> None:
        self._settle(track_id, "completed", 1.0)

    def fail(self, track_id: str) -> None:
        # A failed track still fills its share so the bar can reach the end.
        self._settle(track_id, "failed", 1.0)

    def skip(self, track_id: str) -> None:
        self._settle(track_id, "skipped", 1.0)

    def _settle(self, track_id: str, outcome: str, fraction: float) -> None:
        if track_id not in self._fractions or track_id in self._settled:
            return
        self._fractions[track_id] = fraction
        self._settled[track_id] = outcome
        self._refresh()

    def _counts(self) -> str:
        parts = [
            f"[green]✓ {self.count('completed')}[/green]",
            f"[red]✗ {self.count('failed')}[/red]",
        ]
        skipped = self.count("skipped")
        if skipped:
            parts.append(f"[yellow]⊘ {skipped}[/yellow]")
        return "  ".join(parts)

    def _refresh(self) -> None:
        if self._task is None:
            return
        self.progress.update(
            self._task, completed=sum(self._fractions.values()), counts=self._counts()
        )
