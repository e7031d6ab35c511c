"""Writes finished recordings to Markdown files."""

import re
from datetime import datetime
from pathlib import Path

from history import HistoryEntry


class MarkdownExporter:
    """Saves history entries as Markdown, summary first.

    Used as the fallback when the external save fails, and for manual export.
    """

    def __init__(self, output_dir: Path | str):
        self._dir = Path(output_dir)

    @property
    def output_dir(self) -> Path:
        return self._dir

    def save_file(self, name: str, content: str) -> Path:
        """Write content under output_dir, never overwriting an existing file."""
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / _safe_name(name)
        stem, suffix = path.stem, path.suffix
        n = 1
        while path.exists():
            path = self._dir / f"{stem}-{n}{suffix}"
            n += 1
        path.write_text(content, encoding="utf-8")
        return path

    def export(self, entry: HistoryEntry) -> Path:
        path = self.save_file(f"meeting-{entry.id}.md", render_markdown(entry))
        print(f"  [export] Saved {path}")
        return path


def render_markdown(entry: HistoryEntry) -> str:
    try:
        when = datetime.fromisoformat(entry.date).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        when = entry.date
    lines = [
        f"# Meeting {when}",
        "",
        f"Duration: {_format_elapsed(entry.duration_ms / 1000)}",
        "",
        "## Summary",
        "",
        entry.summary or "_No summary_",
        "",
        "## Transcription",
        "",
    ]
    if entry.is_separate_recording:
        lines += [
            "### Microphone",
            "",
            entry.mic_transcription or "_No transcription_",
            "",
            "### Counterpart",
            "",
            entry.counterpart_transcription or "_No transcription_",
        ]
    else:
        lines.append(entry.transcription or "_No transcription_")
    return "\n".join(lines) + "\n"


def _safe_name(name: str) -> str:
    return re.sub(r"[^\w.\-]+", "_", name) or "export.md"


def _format_elapsed(seconds: float) -> str:
    """Format elapsed seconds as HH:MM:SS."""
    total = int(seconds)
    h = total // 3600
    m = (total % 3600) // 60
    s = total % 60
    return f"{h:02d}:{m:02d}:{s:02d}"
