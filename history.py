"""Recording history: newest first, capped, persisted as JSON."""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from config import HISTORY_LIMIT


@dataclass
class HistoryEntry:
    id: str
    date: str
    duration_ms: int
    transcription: str | None = None
    summary: str | None = None
    mic_transcription: str | None = None
    counterpart_transcription: str | None = None
    is_separate_recording: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class HistoryStore:
    """Append-only list of finished recordings.

    Entries are inserted at the front; once the limit is exceeded the oldest
    insertion is evicted. With a path, the list is loaded on construction and
    rewritten after every append.
    """

    def __init__(self, path: Path | str | None = None, limit: int = HISTORY_LIMIT):
        self.path = Path(path) if path else None
        self.limit = limit
        self._entries: list[HistoryEntry] = []
        if self.path and self.path.exists():
            self._load()

    def __len__(self):
        return len(self._entries)

    def _load(self):
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            print(f"  [history] Could not read {self.path}: {e}")
            return
        self._entries = [HistoryEntry.from_dict(item) for item in raw][: self.limit]
        print(f"  [history] Loaded {len(self._entries)} entries")

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps([e.to_dict() for e in self._entries], ensure_ascii=False, indent=2),
                       encoding="utf-8")
        tmp.replace(self.path)

    def append(self, entry: HistoryEntry):
        self._entries.insert(0, entry)
        del self._entries[self.limit:]
        if self.path:
            try:
                self._save()
            except OSError as e:
                print(f"  [history] Could not write {self.path}: {e}")

    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def get(self, entry_id: str) -> HistoryEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None
