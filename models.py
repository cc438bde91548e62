# models.py
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple
from uuid import uuid4


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class Topic:
    name: str
    done: bool = False
    created_at: str = field(default_factory=now_iso)
    id: Optional[str] = field(default_factory=lambda: uuid4().hex)

    def toggled(self) -> "Topic":
        return replace(self, done=not self.done)

    def to_doc(self) -> dict:
        doc = {"name": self.name, "done": self.done, "createdAt": self.created_at}
        if self.id:
            doc["id"] = self.id
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> "Topic":
        # rows written before topics had ids keep id=None and are addressed by position only
        return cls(
            name=str(doc.get("name") or ""),
            done=bool(doc.get("done")),
            created_at=str(doc.get("createdAt") or doc.get("created_at") or ""),
            id=doc.get("id") or None,
        )


@dataclass(frozen=True)
class Subject:
    id: str
    name: str
    topics: Tuple[Topic, ...] = ()
    created_at: str = ""
    version: int = 0

    @classmethod
    def from_row(cls, row: dict) -> "Subject":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            topics=tuple(Topic.from_doc(t) for t in (row.get("topics") or []) if isinstance(t, dict)),
            created_at=str(row.get("created_at") or ""),
            version=int(row.get("version") or 0),
        )


# ---------- Progress ----------
@dataclass(frozen=True)
class Progress:
    completed: int
    total: int
    percent: int


def progress(topics: Iterable[Topic]) -> Progress:
    """
    completed / total for one subject. percent is rounded half up and is 0
    for a subject with no topics.
    """
    topics = list(topics)
    completed = sum(1 for t in topics if t.done)
    total = len(topics)
    percent = 0 if total == 0 else int(math.floor(100 * completed / total + 0.5))
    return Progress(completed=completed, total=total, percent=percent)
