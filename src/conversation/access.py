"""
Acting-user context for the assistant pipeline.
"""

from typing import Optional

from sqlalchemy.orm import Session

from database.orm_models import Project


class AccessContext:
    """Database session plus the user on whose behalf the pipeline runs."""

    def __init__(self, db: Session, user_id: Optional[int] = None):
        self.db = db
        self.user_id = user_id

    def current_user_id(self, project: Project) -> Optional[int]:
        """The acting user, or the project creator when nobody is signed in."""
        if self.user_id is not None:
            return self.user_id
        return project.created_by

    def is_project_creator(self, project: Project) -> bool:
        return self.user_id is not None and self.user_id == project.created_by
