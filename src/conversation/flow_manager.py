"""
Conversation Flow Manager for the Project Assistant

Entry point for assistant messages. Each message is classified as a
question or a command: questions are answered right away, commands are
turned into a plan whose preview is returned for confirmation. A confirmed
plan is applied through execute_command.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.orm_models import Project
from src.conversation.access import AccessContext
from src.conversation.entity_resolver import EntityResolver
from src.conversation.executor import CommandExecutor
from src.conversation.history import DEFAULT_SESSION, ConversationHistoryManager
from src.conversation.intent_classifier import IntentClassifier
from src.conversation.plan_generator import PlanGenerator
from src.conversation.question_answering import QuestionAnsweringService
from src.conversation.task_query import TaskQueryBuilder
from src.llms.llm import CompletionClient, get_completion_client
from src.utils.config import Config, get_config
from src.utils.errors import ProjectManagementError, log_error
from src.utils.logger import log_call

logger = logging.getLogger(__name__)

SECRET_NEEDLES = (
    "api_key", "api-key", "apikey", "secret=", "password=", "pwd=", "token=",
    "bearer ", "ghp_", "-----begin ", "private key", "aws_access_key_id", "aws_secret_access_key",
)


def looks_like_secret(message: str) -> bool:
    text = (message or "").lower()
    return any(needle in text for needle in SECRET_NEEDLES)


def _information(message: str, **extra) -> Dict[str, Any]:
    return {"type": "information", "message": message, "requires_confirmation": False, **extra}


def _error(message: str, **extra) -> Dict[str, Any]:
    return {"type": "error", "message": message, "requires_confirmation": False, **extra}


class ProjectAssistant:
    """Processes assistant messages for one acting user"""

    def __init__(
        self,
        db: Session,
        user_id: Optional[int] = None,
        client: Optional[CompletionClient] = None,
        use_llm: bool = True,
        config: Optional[Config] = None,
    ):
        """
        Args:
            db: Database session for this request
            user_id: Acting user, None to act as the project creator
            client: Completion backend, created from configuration when omitted
            use_llm: Set False to run on local patterns only
            config: Application config, the global one when omitted
        """
        self.db = db
        self.config = config or get_config()
        if client is None and use_llm:
            client = get_completion_client()
        self.client = client

        self.access = AccessContext(db, user_id)
        self.resolver = EntityResolver(self.access)
        self.queries = TaskQueryBuilder(self.resolver, result_limit=self.config.assistant.result_limit)
        self.classifier = IntentClassifier(self.client, history_window=self.config.assistant.classifier_history)
        self.qa = QuestionAnsweringService(self.resolver, self.queries, self.client)
        self.planner = PlanGenerator(self.resolver, self.queries, qa=self.qa, client=self.client)
        self.executor = CommandExecutor(self.resolver, self.queries)
        self.history = ConversationHistoryManager(db, limit=self.config.assistant.history_limit)

    def process_message(
        self,
        project: Project,
        message: str,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Process an incoming message and return the assistant response

        Returns:
            {"type": "information" | "command" | "error", "message": ...,
             "requires_confirmation": bool, "command_data": {...}}
            command_data is only present for commands awaiting confirmation.
        """
        text = (message or "").strip()
        if not text:
            return _information("Please type a request.")
        if looks_like_secret(text):
            logger.warning(f"Rejected message with secret-like content for project {project.id}")
            return _error("I can't process content that looks like secrets.")

        session = session_id or DEFAULT_SESSION
        history: List[Dict[str, Any]] = []
        try:
            history = self.history.get_history(project, session)
        except SQLAlchemyError as e:
            logger.warning(f"Could not load conversation history: {e}")
            self.db.rollback()

        try:
            response = self._respond(project, text, history)
        except ProjectManagementError as e:
            response = _information(e.message)
        except Exception as e:
            log_error(e, {"project_id": project.id, "session_id": session})
            self.db.rollback()
            response = _error("An unexpected error occurred. Please try again.")

        self._record(project, session, "user", text)
        self._record(project, session, "assistant", response["message"])
        return response

    def _respond(self, project: Project, message: str, history: List[Dict[str, Any]]) -> Dict[str, Any]:
        classification = self.classifier.classify(message, history, project_context=self.build_snapshot(project))

        if classification.is_question:
            answer = self.qa.answer(project, message, history, classification.question)
            return _information(answer)

        result = self.planner.generate_plan(project, message, history, classification.plan)
        if result.command_data is None:
            return _information(result.preview_message)

        return {
            "type": "command",
            "message": result.preview_message,
            "command_data": result.command_data,
            "requires_confirmation": True,
        }

    @log_call
    def execute_command(
        self,
        project: Project,
        plan: Dict[str, Any],
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply a confirmed plan. Typed failures come back as an error response."""
        try:
            result = self.executor.execute(project, plan)
        except ProjectManagementError as e:
            logger.warning(f"Command rejected: {e.message}")
            response = _error(e.message, error_code=e.error_code.value)
        except SQLAlchemyError as e:
            log_error(e, {"project_id": project.id, "plan_type": (plan or {}).get("type")})
            self.db.rollback()
            response = _error("Failed to execute command. Please try again.")
        else:
            response = _information(result["message"], data=self.build_snapshot(project))

        if session_id:
            self._record(project, session_id, "assistant", response["message"])
        return response

    def build_snapshot(self, project: Project) -> Dict[str, Any]:
        return self.qa.snapshot(project)

    def _record(self, project: Project, session_id: str, role: str, content: str) -> None:
        try:
            self.history.append(project, role, content, session_id, user_id=self.access.user_id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not record {role} message: {e}")
            self.db.rollback()
