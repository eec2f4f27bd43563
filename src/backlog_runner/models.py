"""Data models for the backlog runner."""

from dataclasses import dataclass, field
from datetime import datetime

REVISION_LABELS = frozenset({"revision-requested", "needs-revision"})


@dataclass(frozen=True)
class Task:
    id: str
    title: str = ""
    description: str = ""
    status: str = ""
    labels: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_revision(self) -> bool:
        return not REVISION_LABELS.isdisjoint(self.labels)


@dataclass(frozen=True)
class Snapshot:
    ref: str
    branch: str | None = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class PreparedBranch:
    name: str
    created: bool
    stashed: bool = False
    conflicted: bool = False


@dataclass
class RunStats:
    completed: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=datetime.now)
