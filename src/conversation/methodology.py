"""
Canonical task enumerations and per-methodology status labels.

Canonical statuses are the stored representation. Each methodology only
changes what the user sees, and every variant carries its own pair of
mapping functions (canonical -> label, label -> canonical).
"""

import re
from enum import Enum
from typing import Callable, Dict, List, Optional


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "inprogress"
    REVIEW = "review"
    DONE = "done"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


STATUSES: List[str] = [s.value for s in TaskStatus]
PRIORITIES: List[str] = [p.value for p in Priority]
OPEN_STATUSES: List[str] = [TaskStatus.TODO.value, TaskStatus.IN_PROGRESS.value, TaskStatus.REVIEW.value]

DEFAULT_STATUS = TaskStatus.TODO.value
DEFAULT_PRIORITY = Priority.MEDIUM.value

_STATUS_NOISE_RE = re.compile(r"\b(?:status|column|phase|stage)\b")


def normalize_token(token: Optional[str]) -> str:
    """Lowercase, turn separators into spaces, drop status words, collapse spaces."""
    if token is None:
        return ""
    text = str(token).strip().lower()
    text = text.replace("_", " ").replace("-", " ")
    text = _STATUS_NOISE_RE.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


class Methodology(str, Enum):
    KANBAN = "kanban"
    SCRUM = "scrum"
    AGILE = "agile"
    WATERFALL = "waterfall"
    LEAN = "lean"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Methodology":
        """Parse a stored methodology, unknown values fall back to kanban."""
        try:
            return cls(normalize_token(value))
        except ValueError:
            return cls.KANBAN

    def status_label(self, status: str) -> str:
        """User-facing label for a canonical status."""
        return _LABELERS[self](status)

    def status_from_label(self, label: str) -> Optional[str]:
        """Canonical status for a normalized label, None when unknown."""
        return _PARSERS[self](label)

    def labels(self) -> Dict[str, str]:
        return {status: self.status_label(status) for status in STATUSES}


# ---- canonical -> label ----

def _identity_label(status: str) -> str:
    return status


def _waterfall_label(status: str) -> str:
    if status == TaskStatus.TODO.value:
        return "requirements"
    if status == TaskStatus.IN_PROGRESS.value:
        return "design"
    if status == TaskStatus.REVIEW.value:
        return "verification"
    if status == TaskStatus.DONE.value:
        return "maintenance"
    return status


def _lean_label(status: str) -> str:
    if status == TaskStatus.TODO.value:
        return "backlog"
    if status == TaskStatus.IN_PROGRESS.value:
        return "todo"
    if status == TaskStatus.REVIEW.value:
        return "testing"
    return status


# ---- label -> canonical ----

def _kanban_status(label: str) -> Optional[str]:
    if label in ("todo", "to do", "backlog"):
        return TaskStatus.TODO.value
    if label in ("inprogress", "in progress", "doing", "wip"):
        return TaskStatus.IN_PROGRESS.value
    if label in ("review", "code review", "qa", "testing"):
        return TaskStatus.REVIEW.value
    if label in ("done", "complete", "finished"):
        return TaskStatus.DONE.value
    return None


def _scrum_status(label: str) -> Optional[str]:
    if label in ("product backlog", "sprint backlog", "backlog", "todo"):
        return TaskStatus.TODO.value
    if label in ("inprogress", "in progress", "doing", "wip"):
        return TaskStatus.IN_PROGRESS.value
    if label in ("review", "code review", "qa", "testing"):
        return TaskStatus.REVIEW.value
    if label in ("done", "complete", "finished"):
        return TaskStatus.DONE.value
    return None


def _waterfall_status(label: str) -> Optional[str]:
    if label in ("requirements", "specification", "analysis"):
        return TaskStatus.TODO.value
    if label in ("design", "implementation", "construction"):
        return TaskStatus.IN_PROGRESS.value
    if label in ("verification", "validation", "testing"):
        return TaskStatus.REVIEW.value
    if label in ("maintenance", "done", "complete"):
        return TaskStatus.DONE.value
    return None


def _lean_status(label: str) -> Optional[str]:
    if label in ("backlog", "kanban backlog"):
        return TaskStatus.TODO.value
    if label in ("todo", "value stream"):
        return TaskStatus.IN_PROGRESS.value
    if label in ("testing", "qa"):
        return TaskStatus.REVIEW.value
    if label in ("done", "complete"):
        return TaskStatus.DONE.value
    return None


_LABELERS: Dict[Methodology, Callable[[str], str]] = {
    Methodology.KANBAN: _identity_label,
    Methodology.SCRUM: _identity_label,
    Methodology.AGILE: _identity_label,
    Methodology.WATERFALL: _waterfall_label,
    Methodology.LEAN: _lean_label,
}

_PARSERS: Dict[Methodology, Callable[[str], Optional[str]]] = {
    Methodology.KANBAN: _kanban_status,
    Methodology.SCRUM: _scrum_status,
    Methodology.AGILE: _scrum_status,
    Methodology.WATERFALL: _waterfall_status,
    Methodology.LEAN: _lean_status,
}

_missing = (set(Methodology) - set(_LABELERS)) | (set(Methodology) - set(_PARSERS))
if _missing:
    raise RuntimeError(f"Methodology variants without label mapping: {sorted(m.value for m in _missing)}")


def pretty_phase(methodology, status: str) -> str:
    """Label a canonical status for the given methodology (enum or string)."""
    if not isinstance(methodology, Methodology):
        methodology = Methodology.parse(methodology)
    return methodology.status_label(status)


_NTH_STAGE = {
    "first": TaskStatus.TODO.value,
    "1st": TaskStatus.TODO.value,
    "second": TaskStatus.IN_PROGRESS.value,
    "2nd": TaskStatus.IN_PROGRESS.value,
    "third": TaskStatus.REVIEW.value,
    "3rd": TaskStatus.REVIEW.value,
    "fourth": TaskStatus.DONE.value,
    "4th": TaskStatus.DONE.value,
    "last": TaskStatus.DONE.value,
    "final": TaskStatus.DONE.value,
}


def nth_stage_to_status(ordinal: str) -> Optional[str]:
    """Map "first".."fourth" board stages to canonical statuses."""
    return _NTH_STAGE.get((ordinal or "").strip().lower())
