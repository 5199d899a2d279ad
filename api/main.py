"""
FastAPI server for the Project Assistant

HTTP surface over the assistant pipeline: send a message, confirm a
planned command, and read or clear a conversation session.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import crud as db_crud
from database.connection import close_db, get_db_session, init_db
from database.orm_models import Project
from src.conversation.flow_manager import ProjectAssistant
from src.conversation.history import DEFAULT_SESSION

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Project Assistant API",
    description="Natural-language assistant for project task management",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    """Initialize database on startup"""
    try:
        init_db()
        logger.info("✅ Database initialized successfully")
    except SQLAlchemyError as e:
        logger.warning(f"⚠️ Database initialization warning: {e}")


@app.on_event("shutdown")
def shutdown_event():
    """Release pooled database connections"""
    close_db()


# Pydantic models for API
class AssistantMessage(BaseModel):
    message: str
    session_id: str = DEFAULT_SESSION


class CommandConfirmation(BaseModel):
    command_data: Dict[str, Any]
    session_id: Optional[str] = None


class AssistantResponse(BaseModel):
    type: str
    message: str
    requires_confirmation: bool = False
    command_data: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None


class HistoryTurn(BaseModel):
    role: str
    content: str
    timestamp: Optional[str] = None


class HistoryResponse(BaseModel):
    session_id: str
    messages: List[HistoryTurn] = Field(default_factory=list)


def get_assistant(
    db: Session = Depends(get_db_session),
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
) -> ProjectAssistant:
    """Assistant bound to this request's session and acting user"""
    return ProjectAssistant(db, user_id=x_user_id)


def get_project_or_404(project_id: int, db: Session) -> Project:
    project = db_crud.get_project(db, project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


# Health check endpoint
@app.get("/health")
def health_check():
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.post("/api/projects/{project_id}/assistant/messages", response_model=AssistantResponse)
def send_message(
    project_id: int,
    body: AssistantMessage,
    assistant: ProjectAssistant = Depends(get_assistant),
):
    """Send a message to the project assistant"""
    project = get_project_or_404(project_id, assistant.db)
    if not project.assistant_enabled:
        raise HTTPException(status_code=403, detail="The assistant is disabled for this project")
    return assistant.process_message(project, body.message, body.session_id)


@app.post("/api/projects/{project_id}/assistant/execute", response_model=AssistantResponse)
def execute_command(
    project_id: int,
    body: CommandConfirmation,
    assistant: ProjectAssistant = Depends(get_assistant),
):
    """Execute a command the user confirmed"""
    project = get_project_or_404(project_id, assistant.db)
    if not project.assistant_enabled:
        raise HTTPException(status_code=403, detail="The assistant is disabled for this project")
    return assistant.execute_command(project, body.command_data, body.session_id)


@app.get("/api/projects/{project_id}/assistant/snapshot")
def get_snapshot(project_id: int, assistant: ProjectAssistant = Depends(get_assistant)):
    """Task counts for the project"""
    project = get_project_or_404(project_id, assistant.db)
    return assistant.build_snapshot(project)


@app.get("/api/projects/{project_id}/assistant/history/{session_id}", response_model=HistoryResponse)
def get_history(
    project_id: int,
    session_id: str,
    limit: Optional[int] = None,
    assistant: ProjectAssistant = Depends(get_assistant),
):
    """Conversation turns of a session, oldest first"""
    project = get_project_or_404(project_id, assistant.db)
    messages = assistant.history.get_history(project, session_id, limit=limit)
    return HistoryResponse(session_id=session_id, messages=messages)


@app.delete("/api/projects/{project_id}/assistant/history/{session_id}")
def clear_history(
    project_id: int,
    session_id: str,
    assistant: ProjectAssistant = Depends(get_assistant),
):
    """Delete all turns of a session"""
    project = get_project_or_404(project_id, assistant.db)
    deleted = assistant.history.clear(project, session_id)
    return {"session_id": session_id, "deleted": deleted}


if __name__ == "__main__":
    import uvicorn
    from src.utils.logger import setup_logging_from_env

    setup_logging_from_env()
    uvicorn.run(app, host="0.0.0.0", port=8000)
