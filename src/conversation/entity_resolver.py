"""
Entity resolution for assistant commands.

Maps free-text hints to project members and free-text status/priority
tokens to their canonical values. Every resolver returns None instead of
raising when nothing matches; callers decide whether that aborts.
"""

import logging
import re
from typing import Dict, List, Optional

from database import crud
from database.orm_models import Project, User
from src.conversation.access import AccessContext
from src.conversation.methodology import (
    PRIORITIES,
    STATUSES,
    Methodology,
    normalize_token,
)

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_POSSESSIVE_RE = re.compile(r"['’]s$", re.IGNORECASE)

_SELF_HINTS = {"me", "myself", "__me__"}
_OWNER_HINTS = {"owner", "project owner", "__owner__"}

PRIORITY_SYNONYMS: Dict[str, str] = {
    "lowest": "low",
    "minor": "low",
    "normal": "medium",
    "moderate": "medium",
    "higher": "high",
    "important": "high",
    "highest": "urgent",
    "critical": "urgent",
    "blocker": "urgent",
    "p0": "urgent",
    "p1": "high",
    "p2": "medium",
    "p3": "low",
    "prio 0": "urgent",
    "prio 1": "high",
    "prio 2": "medium",
    "prio 3": "low",
}


def resolve_priority_token(token: Optional[str]) -> Optional[str]:
    """Canonical priority for a free-text token, None when unknown."""
    text = normalize_token(token)
    if not text:
        return None
    if text.endswith(" priority"):
        text = text[: -len(" priority")].strip()
    if text in PRIORITIES:
        return text
    return PRIORITY_SYNONYMS.get(text)


def resolve_status_for(methodology, token: Optional[str]) -> Optional[str]:
    """
    Canonical status for a free-text token under a methodology.

    The methodology's own labels win over literal canonical names, so a
    lean board's "todo" column resolves to inprogress.
    """
    text = normalize_token(token)
    if not text:
        return None
    if not isinstance(methodology, Methodology):
        methodology = Methodology.parse(methodology)

    mapped = methodology.status_from_label(text)
    if mapped:
        return mapped
    if text in STATUSES:
        return text
    if text == "in progress":
        return "inprogress"
    return None


class EntityResolver:
    """Resolves hints against one project's people and labels."""

    def __init__(self, access: AccessContext):
        self.access = access
        self.db = access.db

    def candidates(self, project: Project) -> List[User]:
        """Project owner followed by members, without duplicates."""
        users: List[User] = []
        seen = set()
        owner = crud.get_user(self.db, project.created_by) if project.created_by else None
        for user in [owner] + crud.get_project_members(self.db, project.id):
            if user is not None and user.id not in seen:
                seen.add(user.id)
                users.append(user)
        return users

    def resolve_assignee_id(self, project: Project, hint) -> Optional[int]:
        if hint is None:
            return None
        text = str(hint).strip()
        if text.startswith("@"):
            text = text[1:]
        text = _POSSESSIVE_RE.sub("", text).strip()
        if not text:
            return None

        lowered = text.lower()
        if lowered in _SELF_HINTS:
            return self.access.current_user_id(project)
        if lowered in _OWNER_HINTS:
            return project.created_by

        if text.isdigit():
            user_id = int(text)
            return user_id if crud.is_project_member(self.db, project.id, user_id) else None

        if _EMAIL_RE.match(text):
            user = crud.get_user_by_email(self.db, text)
            if user and crud.is_project_member(self.db, project.id, user.id):
                return user.id
            return None

        candidates = self.candidates(project)
        for user in candidates:
            if (user.name or "").strip().lower() == lowered:
                return user.id
        for user in candidates:
            if lowered in (user.name or "").lower():
                return user.id

        logger.debug(f"Assignee hint '{hint}' did not match any member of project {project.id}")
        return None

    def resolve_status_token(self, project: Project, token) -> Optional[str]:
        return resolve_status_for(project.methodology, token)

    def resolve_priority_token(self, token) -> Optional[str]:
        return resolve_priority_token(token)

    def user_name(self, user_id: Optional[int]) -> Optional[str]:
        if user_id is None:
            return None
        user = crud.get_user(self.db, user_id)
        return user.name if user else None
