"""
Task lookups and filtered task queries, always scoped to one project.

Two entry points:
- find_tasks: ordered lookup strategy for questions ("tasks assigned to
  Alice", "task #12", "tasks due this week"), first non-empty result wins.
- build_query: conjunctive filter query used by bulk commands and previews.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Query

from database.orm_models import Milestone, Project, Task
from src.conversation.dates import date_range
from src.conversation.entity_resolver import EntityResolver
from src.conversation.methodology import OPEN_STATUSES, pretty_phase

logger = logging.getLogger(__name__)

RESULT_LIMIT = 10

NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

KEYWORD_STOPWORDS = {"task", "tasks", "find", "show", "get", "with", "from", "that", "have", "contains"}

_ORDINAL_WINDOW_RE = re.compile(
    r"\b(?:only\s+)?(?:the\s+)?(first|last|top)\s+(one|two|three|four|five|six|seven|eight|nine|ten|\d+)\b",
    re.IGNORECASE,
)
_BY_ID_RE = re.compile(r"(?:\btask\s+#?|#)(\d+)\b", re.IGNORECASE)
_BARE_ID_RE = re.compile(r"^\s*(?:task\s+)?#?(\d+)\s*\??$", re.IGNORECASE)
_HINT = r"([a-z0-9._@'\-]+(?:\s+[a-z0-9._@'\-]+){0,2})"
_BY_ASSIGNEE_RE = re.compile(r"\b(?:tasks?\s+)?(?:assigned\s+to|for|(?<!created\s)by)\s+" + _HINT, re.IGNORECASE)
_BY_CREATOR_RE = re.compile(r"\b(?:tasks?\s+)?(?:created\s+by|from)\s+" + _HINT, re.IGNORECASE)
_BY_MILESTONE_RE = re.compile(r"\b(?:tasks?\s+)?(?:in|from|for)\s+milestone\s+[\"']?([a-z0-9._\-\s]+?)[\"']?\s*(?:\?|$)", re.IGNORECASE)
_STATUS_COMBO_RE = re.compile(
    r"\b([a-z][a-z\-\s]*?)\s+(?:tasks?\s+)?(?:assigned\s+to|for)\s+" + _HINT, re.IGNORECASE
)
_CREATED_PERIOD_RE = re.compile(r"\btasks?\s+(?:created|from)\s+(today|yesterday|this\s+week|last\s+week)\b", re.IGNORECASE)
_DUE_PERIOD_RE = re.compile(r"\btasks?\s+due\s+(today|tomorrow|this\s+week|next\s+week)\b", re.IGNORECASE)
_QUOTED_RE = re.compile(r"[\"']([^\"']+)[\"']")

_ORDERABLE = {
    "id": Task.id,
    "created_at": Task.created_at,
    "updated_at": Task.updated_at,
    "end_date": Task.end_date,
    "start_date": Task.start_date,
    "title": Task.title,
    "priority": Task.priority,
    "status": Task.status,
}


@dataclass
class TaskFilters:
    """Lookup filters extracted from a question or supplied by a caller."""
    task_id: Optional[int] = None
    status: Optional[str] = None
    assignee_hint: Optional[str] = None
    creator_hint: Optional[str] = None
    milestone: Optional[str] = None
    created_period: Optional[str] = None
    due_period: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    limit: Optional[int] = None
    order: Optional[str] = None
    order_by: Optional[str] = None

    @property
    def has_window(self) -> bool:
        return bool(self.limit)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, [], "")}


def parse_ordinal_window(text: str) -> Optional[Dict[str, Any]]:
    """
    Parse "first two", "last 3", "top 5" style windows.

    Returns {limit, order_by, order} or None.
    """
    match = _ORDINAL_WINDOW_RE.search(text or "")
    if not match:
        return None
    raw = match.group(2).lower()
    count = int(raw) if raw.isdigit() else NUMBER_WORDS.get(raw, 0)
    if count <= 0:
        return None
    return {
        "limit": count,
        "order_by": "created_at",
        "order": "desc" if match.group(1).lower() == "last" else "asc",
    }


def extract_keywords(message: str) -> List[str]:
    """Quoted phrases plus significant words (longer than 3 chars, no stopwords or numerals)."""
    keywords = [q.strip() for q in _QUOTED_RE.findall(message or "")]
    for word in re.split(r"\s+", (message or "").lower()):
        word = word.strip(".,;:!?\"'()[]")
        if len(word) > 3 and word not in KEYWORD_STOPWORDS and not word.isdigit():
            keywords.append(word)

    unique: List[str] = []
    for keyword in keywords:
        if keyword and keyword not in unique:
            unique.append(keyword)
    return unique


def task_summary(task: Task, methodology: str = None) -> Dict[str, Any]:
    """Serializable view of a task with its user-facing status label."""
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "status_label": pretty_phase(methodology, task.status) if methodology else task.status,
        "priority": task.priority,
        "start_date": task.start_date.isoformat() if task.start_date else None,
        "end_date": task.end_date.isoformat() if task.end_date else None,
        "assignee_id": task.assignee_id,
        "assignee": task.assignee.name if task.assignee else None,
        "creator_id": task.creator_id,
        "milestone_id": task.milestone_id,
    }


class TaskQueryBuilder:
    """Builds project-scoped task queries."""

    def __init__(self, resolver: EntityResolver, result_limit: int = RESULT_LIMIT):
        self.resolver = resolver
        self.db = resolver.db
        self.result_limit = result_limit

    def _project_tasks(self, project: Project) -> Query:
        return self.db.query(Task).filter(Task.project_id == project.id)

    # ------------------------------------------------------------------
    # Question lookups
    # ------------------------------------------------------------------

    def parse_lookup_filters(self, project: Project, message: str) -> TaskFilters:
        """Extract lookup filters from free text."""
        text = message or ""
        filters = TaskFilters()

        window = parse_ordinal_window(text)
        if window:
            filters.limit = window["limit"]
            filters.order = window["order"]
            filters.order_by = window["order_by"]
            text = _ORDINAL_WINDOW_RE.sub(" ", text)

        match = _BY_ID_RE.search(text) or _BARE_ID_RE.match(text)
        if match:
            filters.task_id = int(match.group(1))

        match = _BY_ASSIGNEE_RE.search(text)
        if match:
            filters.assignee_hint = match.group(1).strip()

        match = _BY_CREATOR_RE.search(text)
        if match and not re.match(r"(?i)milestone\b", match.group(1)):
            filters.creator_hint = match.group(1).strip()

        match = _BY_MILESTONE_RE.search(text)
        if match:
            filters.milestone = match.group(1).strip()

        match = _STATUS_COMBO_RE.search(text)
        if match:
            filters.status = self._status_from_phrase(project, match.group(1))

        match = _CREATED_PERIOD_RE.search(text)
        if match:
            filters.created_period = re.sub(r"\s+", " ", match.group(1).lower())
        match = _DUE_PERIOD_RE.search(text)
        if match:
            filters.due_period = re.sub(r"\s+", " ", match.group(1).lower())

        filters.keywords = extract_keywords(text)
        return filters

    def _status_from_phrase(self, project: Project, phrase: str) -> Optional[str]:
        """Resolve the trailing one or two words of a phrase as a status."""
        words = phrase.strip().split()
        for size in (2, 1):
            if len(words) >= size:
                status = self.resolver.resolve_status_token(project, " ".join(words[-size:]))
                if status:
                    return status
        return None

    def _resolve_person(self, project: Project, hint: Optional[str]) -> Optional[int]:
        """Resolve a hint, trying shorter word prefixes when the full hint fails."""
        if not hint:
            return None
        words = hint.split()
        for size in range(len(words), 0, -1):
            user_id = self.resolver.resolve_assignee_id(project, " ".join(words[:size]))
            if user_id:
                return user_id
        return None

    def _finish(self, query: Query, filters: TaskFilters, default_column=None, ascending: bool = False) -> List[Task]:
        if filters.has_window:
            column = _ORDERABLE.get(filters.order_by or "created_at", Task.created_at)
            column = column.desc() if filters.order == "desc" else column.asc()
            return query.order_by(column, Task.id).limit(filters.limit).all()

        column = default_column if default_column is not None else Task.created_at
        ordering = column.asc() if ascending else column.desc()
        return query.order_by(ordering, Task.id.desc()).limit(self.result_limit).all()

    def find_tasks(self, project: Project, filters: Union[TaskFilters, str]) -> List[Task]:
        """
        Ordered lookup, first non-empty strategy wins:
        id, assignee, creator, milestone, status+assignee, date period,
        keywords. An ordinal window with no other match applies to all tasks.
        """
        if isinstance(filters, str):
            filters = self.parse_lookup_filters(project, filters)

        if filters.task_id:
            task = self._project_tasks(project).filter(Task.id == filters.task_id).first()
            if task:
                return [task]

        if filters.assignee_hint and not filters.status:
            assignee_id = self._resolve_person(project, filters.assignee_hint)
            if assignee_id:
                tasks = self._finish(self._project_tasks(project).filter(Task.assignee_id == assignee_id), filters)
                if tasks:
                    return tasks

        if filters.creator_hint:
            creator_id = self._resolve_person(project, filters.creator_hint)
            if creator_id:
                tasks = self._finish(self._project_tasks(project).filter(Task.creator_id == creator_id), filters)
                if tasks:
                    return tasks

        if filters.milestone:
            milestone = self.db.query(Milestone).filter(
                Milestone.project_id == project.id,
                Milestone.name.ilike(f"%{filters.milestone}%")
            ).first()
            if milestone:
                tasks = self._finish(self._project_tasks(project).filter(Task.milestone_id == milestone.id), filters)
                if tasks:
                    return tasks

        if filters.status and filters.assignee_hint:
            assignee_id = self._resolve_person(project, filters.assignee_hint)
            if assignee_id:
                tasks = self._finish(
                    self._project_tasks(project).filter(
                        Task.status == filters.status,
                        Task.assignee_id == assignee_id
                    ),
                    filters
                )
                if tasks:
                    return tasks

        tasks = self._find_by_period(project, filters)
        if tasks:
            return tasks

        if filters.keywords:
            conditions = []
            for keyword in filters.keywords:
                conditions.append(Task.title.ilike(f"%{keyword}%"))
                conditions.append(Task.description.ilike(f"%{keyword}%"))
            tasks = self._finish(self._project_tasks(project).filter(or_(*conditions)), filters)
            if tasks:
                return tasks

        if filters.has_window:
            return self._finish(self._project_tasks(project), filters)

        return []

    def _find_by_period(self, project: Project, filters: TaskFilters) -> List[Task]:
        if filters.created_period:
            bounds = date_range(filters.created_period)
            if bounds:
                tasks = self._finish(
                    self._project_tasks(project).filter(Task.created_at.between(*bounds)),
                    filters
                )
                if tasks:
                    return tasks

        if filters.due_period:
            bounds = date_range(filters.due_period)
            if bounds:
                return self._finish(
                    self._project_tasks(project).filter(
                        Task.end_date.isnot(None),
                        Task.end_date.between(*bounds)
                    ),
                    filters,
                    default_column=Task.end_date,
                    ascending=True,
                )
        return []

    # ------------------------------------------------------------------
    # Command filters
    # ------------------------------------------------------------------

    def build_query(self, project: Project, filters: Optional[Dict[str, Any]]) -> Query:
        """
        Conjunctive filter query.

        Supported keys: ids, status, priority, overdue, unassigned,
        assigned_to_hint, order_by (default id), order (asc|desc), limit.
        An unresolvable assigned_to_hint matches nothing.
        """
        filters = filters or {}
        query = self._project_tasks(project)

        ids = filters.get("ids")
        if ids and isinstance(ids, (list, tuple)):
            query = query.filter(Task.id.in_([int(i) for i in ids]))
        if filters.get("status"):
            query = query.filter(Task.status == filters["status"])
        if filters.get("priority"):
            query = query.filter(Task.priority == filters["priority"])
        if filters.get("overdue"):
            query = query.filter(
                Task.end_date.isnot(None),
                Task.status.in_(OPEN_STATUSES),
                Task.end_date < datetime.now()
            )
        if filters.get("unassigned"):
            query = query.filter(Task.assignee_id.is_(None))
        if filters.get("assigned_to_hint"):
            assignee_id = self.resolver.resolve_assignee_id(project, filters["assigned_to_hint"])
            query = query.filter(Task.assignee_id == (assignee_id if assignee_id is not None else -1))

        column = _ORDERABLE.get(filters.get("order_by") or "id", Task.id)
        order = str(filters.get("order") or "asc").lower()
        query = query.order_by(column.desc() if order == "desc" else column.asc())

        if filters.get("limit"):
            query = query.limit(max(1, int(filters["limit"])))
        return query

    def count_affected(self, project: Project, filters: Optional[Dict[str, Any]]) -> int:
        return self.build_query(project, filters).count()

    def count_overdue(self, project: Project) -> int:
        return self._project_tasks(project).filter(
            Task.status.in_(OPEN_STATUSES),
            Task.end_date.isnot(None),
            Task.end_date < datetime.now()
        ).count()
