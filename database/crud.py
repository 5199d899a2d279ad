"""
CRUD operations for the project assistant
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from database.orm_models import (
    ConversationMessage, Milestone, Project, ProjectMember, Task, User
)


# ==================== USER CRUD ====================

def create_user(db: Session, email: str, name: str) -> User:
    """Create a new user"""
    user = User(email=email, name=name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user(db: Session, user_id: int) -> Optional[User]:
    """Get user by ID"""
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Get user by email (case-insensitive)"""
    return db.query(User).filter(User.email.ilike(email)).first()


# ==================== PROJECT CRUD ====================

def create_project(db: Session, name: str, created_by: int,
                   description: Optional[str] = None,
                   methodology: str = "kanban",
                   start_date: Optional[datetime] = None,
                   end_date: Optional[datetime] = None) -> Project:
    """Create a new project"""
    project = Project(
        name=name,
        description=description,
        created_by=created_by,
        methodology=methodology,
        start_date=start_date,
        end_date=end_date,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def get_project(db: Session, project_id: int) -> Optional[Project]:
    """Get project by ID"""
    return db.query(Project).filter(Project.id == project_id).first()


def update_project(db: Session, project_id: int, **kwargs) -> Optional[Project]:
    """Update project fields"""
    project = get_project(db, project_id)
    if not project:
        return None

    for key, value in kwargs.items():
        if hasattr(project, key):
            setattr(project, key, value)

    project.updated_at = datetime.now()
    db.commit()
    db.refresh(project)
    return project


# ==================== MEMBER CRUD ====================

def add_project_member(db: Session, project_id: int, user_id: int,
                       role: str = "member") -> ProjectMember:
    """Add a user to a project"""
    member = ProjectMember(project_id=project_id, user_id=user_id, role=role)
    db.add(member)
    db.commit()
    db.refresh(member)
    return member


def get_project_members(db: Session, project_id: int) -> List[User]:
    """Get member users of a project (owner not included)"""
    return (
        db.query(User)
        .join(ProjectMember, ProjectMember.user_id == User.id)
        .filter(ProjectMember.project_id == project_id)
        .order_by(User.id)
        .all()
    )


def is_project_member(db: Session, project_id: int, user_id: int) -> bool:
    """Check membership, the project owner counts as a member"""
    project = get_project(db, project_id)
    if project and project.created_by == user_id:
        return True
    return db.query(ProjectMember).filter(
        ProjectMember.project_id == project_id,
        ProjectMember.user_id == user_id
    ).first() is not None


# ==================== MILESTONE CRUD ====================

def create_milestone(db: Session, project_id: int, name: str,
                     due_date: Optional[datetime] = None) -> Milestone:
    """Create a new milestone"""
    milestone = Milestone(project_id=project_id, name=name, due_date=due_date)
    db.add(milestone)
    db.commit()
    db.refresh(milestone)
    return milestone


# ==================== TASK CRUD ====================

def create_task(db: Session, project_id: int, title: str,
                description: Optional[str] = None,
                status: str = "todo",
                priority: str = "medium",
                start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None,
                creator_id: Optional[int] = None,
                assignee_id: Optional[int] = None,
                milestone_id: Optional[int] = None) -> Task:
    """Create a new task"""
    task = Task(
        project_id=project_id,
        title=title,
        description=description,
        status=status,
        priority=priority,
        start_date=start_date,
        end_date=end_date,
        creator_id=creator_id,
        assignee_id=assignee_id,
        milestone_id=milestone_id,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def get_project_task(db: Session, project_id: int, task_id: int) -> Optional[Task]:
    """Get a task by ID, scoped to its project"""
    return db.query(Task).filter(
        Task.project_id == project_id,
        Task.id == task_id
    ).first()


def get_tasks_by_project(db: Session, project_id: int) -> List[Task]:
    """Get all tasks for a project"""
    return db.query(Task).filter(Task.project_id == project_id).order_by(Task.id).all()


def update_task(db: Session, task: Task, changes: Dict[str, Any]) -> Task:
    """Apply a dictionary of column changes to a task and commit"""
    for key, value in changes.items():
        if hasattr(task, key):
            setattr(task, key, value)

    task.updated_at = datetime.now()
    db.commit()
    db.refresh(task)
    return task


def delete_task(db: Session, task: Task) -> None:
    """Delete a task"""
    db.delete(task)
    db.commit()


# ==================== CONVERSATION CRUD ====================

def create_conversation_message(db: Session, project_id: int, role: str,
                                content: str, session_id: str = "default",
                                user_id: Optional[int] = None) -> ConversationMessage:
    """Create a new conversation message"""
    message = ConversationMessage(
        project_id=project_id,
        session_id=session_id,
        user_id=user_id,
        role=role,
        content=content,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def get_conversation_messages(db: Session, project_id: int,
                              session_id: str = "default",
                              limit: int = 100) -> List[ConversationMessage]:
    """Get the newest messages for a session, oldest first"""
    newest = (
        db.query(ConversationMessage)
        .filter(
            ConversationMessage.project_id == project_id,
            ConversationMessage.session_id == session_id
        )
        .order_by(ConversationMessage.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(newest))


def delete_conversation_messages(db: Session, project_id: int,
                                 session_id: str = "default") -> int:
    """Delete all messages of a session"""
    count = db.query(ConversationMessage).filter(
        ConversationMessage.project_id == project_id,
        ConversationMessage.session_id == session_id
    ).delete(synchronize_session=False)
    db.commit()
    return count
