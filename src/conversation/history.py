"""
Conversation history persisted per project and session.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from database import crud
from database.orm_models import Project
from src.utils.errors import ValidationError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")
DEFAULT_SESSION = "default"


class ConversationHistoryManager:
    """Reads and writes conversation turns for a project session"""

    def __init__(self, db: Session, limit: int = 100):
        self.db = db
        self.limit = limit

    def append(
        self,
        project: Project,
        role: str,
        content: str,
        session_id: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        if role not in ROLES:
            raise ValidationError(f"Invalid conversation role: {role}", {"role": role})

        message = crud.create_conversation_message(
            self.db,
            project_id=project.id,
            role=role,
            content=content or "",
            session_id=session_id or DEFAULT_SESSION,
            user_id=user_id,
        )
        return self._to_turn(message)

    def get_history(
        self,
        project: Project,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """The newest `limit` turns of the session, oldest first."""
        messages = crud.get_conversation_messages(
            self.db,
            project_id=project.id,
            session_id=session_id or DEFAULT_SESSION,
            limit=limit or self.limit,
        )
        return [self._to_turn(m) for m in messages]

    def clear(self, project: Project, session_id: Optional[str] = None) -> int:
        count = crud.delete_conversation_messages(self.db, project.id, session_id or DEFAULT_SESSION)
        logger.info(f"Cleared {count} messages from session {session_id or DEFAULT_SESSION} of project {project.id}")
        return count

    @staticmethod
    def _to_turn(message) -> Dict[str, Any]:
        return {
            "role": message.role,
            "content": message.content,
            "timestamp": message.created_at.isoformat() if message.created_at else None,
        }
