"""
Question answering for information requests.

Most questions are answered deterministically from the task store. When a
completion backend is configured it answers follow-up questions that need
the conversation history, and acts as a fallback when no deterministic
answer applies.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from database import crud
from database.orm_models import Project, Task
from src.conversation.dates import date_range
from src.conversation.entity_resolver import EntityResolver
from src.conversation.methodology import OPEN_STATUSES, PRIORITIES, STATUSES, TaskStatus, pretty_phase
from src.conversation.task_query import TaskQueryBuilder, task_summary
from src.llms.llm import CompletionClient
from src.utils.errors import UpstreamError

logger = logging.getLogger(__name__)

MAX_ANSWER_CHARS = 800
LIST_DETAIL_LIMIT = 10

_CONTEXT_WORDS = ("they", "them", "their", "those", "these", "it", "its", "that", "this")
_WEEKLY_RE = re.compile(r"\b(weekly|week)\b.*\b(progress|report|summary)\b", re.I)
_TASK_ID_RE = re.compile(r"#(\d+)|\btask\s+(\d+)\b", re.I)
_TASK_TOPIC_RES = [
    re.compile(r"\b(task|tasks)\b.*\b(id|ids|list|show|what|which|detail|info)\b", re.I),
    re.compile(r"\b(what|which|show|list|find|display|get)\b.*\b(task|tasks|id|ids)\b", re.I),
    re.compile(r"\b(their|these|those)\s+(id|ids|task|tasks)\b", re.I),
]

ANSWER_PROMPT = """You are a helpful project assistant with COMPLETE access to all project and task data.

CONVERSATION RULES:
1. ALWAYS use the actual data from PROJECT_DATA
2. When asked about task IDs, list the actual IDs from the data
3. When asked about assignments, show who each task is assigned to
4. For follow-up questions, refer back to what was just discussed
5. Never say you don't have access to information that's in the context

RESPONSE FORMAT:
- List tasks with their actual IDs (e.g., "Task #123: Fix login bug")
- Include relevant details (assignee name, status, priority)
- Keep responses clear and concise"""


def requires_conversation_context(message: str, history: Optional[List[Dict[str, Any]]]) -> bool:
    """Whether a question refers back to earlier turns."""
    text = (message or "").strip().lower()
    has_id = bool(re.search(r"#\d+", text))

    if not has_id and any(re.search(rf"\b{word}\b", text) for word in _CONTEXT_WORDS):
        return True
    if re.match(r"^(who|whom|whose|assigned to|belong|responsible|owns)", text) and \
            not re.search(r"(owner|team|member)", text):
        return True
    if len(text) < 20 and history:
        return True
    return bool(re.match(r"^(and|also|what about|how about)", text))


def was_discussing_tasks(history: Optional[List[Dict[str, Any]]]) -> bool:
    for turn in (history or [])[-4:]:
        content = str(turn.get("content") or "").lower()
        if "task" in content or re.search(r"\bhow\s+many\b", content) or re.search(r"#\d+", content):
            return True
    return False


def sanitize_answer(text: str) -> str:
    cleaned = re.sub(r"```[\s\S]*?```", "", text or "").strip()
    cleaned = re.sub(r"[ \t]+", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    if len(cleaned) > MAX_ANSWER_CHARS:
        return cleaned[:MAX_ANSWER_CHARS] + "…"
    return cleaned


def provide_suggestions(message: str = "") -> str:
    """Suggestions shown when a request could not be understood."""
    text = (message or "").lower()
    if re.search(r"\b(delete|remove)\b", text):
        examples = ['Delete #123', 'Delete all overdue tasks', 'Delete all done tasks']
    elif re.search(r"\bassign\b", text):
        examples = ['Assign #42 to Alex', 'Assign all unassigned tasks to me']
    elif re.search(r"\b(move|mark|status)\b", text):
        examples = ['Move #42 to done', 'Mark all overdue tasks as done', 'Move the first 3 tasks to review']
    else:
        examples = ['Create task "Task title"', 'Show task #123', 'Project overview',
                    'Tasks due this week', 'Weekly progress report']
    return "I couldn't understand that. Try commands like:\n" + "\n".join(f"• {e}" for e in examples)


class QuestionAnsweringService:
    """Answers information requests about one project"""

    def __init__(
        self,
        resolver: EntityResolver,
        queries: TaskQueryBuilder,
        client: Optional[CompletionClient] = None,
    ):
        self.resolver = resolver
        self.queries = queries
        self.db = resolver.db
        self.client = client

    def answer(
        self,
        project: Project,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        rephrased: Optional[str] = None,
    ) -> str:
        history = history or []
        needs_context = requires_conversation_context(message, history)

        if needs_context and self.client is not None:
            answer = self.answer_with_llm(project, message, history, rephrased)
            if answer:
                return answer

        answer = self.answer_deterministic(project, rephrased or message, history)
        if answer is None and rephrased and rephrased != message:
            answer = self.answer_deterministic(project, message, history)
        if answer:
            return answer

        if not needs_context and self.client is not None:
            answer = self.answer_with_llm(project, message, history, rephrased)
            if answer:
                return answer

        return self.help_text(project)

    # ------------------------------------------------------------------
    # Deterministic answers
    # ------------------------------------------------------------------

    def answer_deterministic(
        self, project: Project, message: str, history: Optional[List[Dict[str, Any]]] = None
    ) -> Optional[str]:
        text = (message or "").strip().lower()
        if not text:
            return None

        if _WEEKLY_RE.search(text):
            return self.weekly_report(project)

        if re.search(r"\bhelp\b", text) or text in ("what can you do", "what can you do?"):
            return self.help_text(project)

        match = _TASK_ID_RE.search(text)
        if match and not re.search(r"\b(first|last)\b", text):
            return self.task_detail(project, int(match.group(1) or match.group(2)))

        if (re.search(r"\bassigned\s+to\s+(who|whom)\b", text) or re.match(r"^(who|whom)\b", text)) \
                and not re.search(r"\b(owner|owns|created|team|member)", text) \
                and was_discussing_tasks(history):
            return self.task_assignments(project)

        if re.search(r"\bwho\b.*\b(owner|owns|created)\b", text) or re.search(r"\bproject\s+owner\b", text):
            return self.owner_info(project)

        if re.search(r"\b(member|members|team)\b", text):
            return self.member_info(project, text)

        if re.search(r"\b(overview|snapshot|summary)\b", text):
            return self.overview(project)

        if re.search(r"\bhow\s+many\b|\bcount\b|\bnumber\s+of\b", text):
            return self.count_answer(project, text)

        if re.search(r"\ball\s+(the\s+)?tasks?\b", text) and \
                not re.search(r"\b(create|update|delete|move|assign)\b", text):
            return self.all_tasks(project)

        if any(p.search(text) for p in _TASK_TOPIC_RES) or re.search(r"\btasks?\b", text) or \
                (re.search(r"\b(id|ids)\b", text) and was_discussing_tasks(history)):
            return self.task_listing(project, message)

        return None

    def task_detail(self, project: Project, task_id: int) -> str:
        task = crud.get_project_task(self.db, project.id, task_id)
        if task is None:
            return f"Task #{task_id} not found in this project."

        lines = [
            f"**Task #{task.id}**: {task.title}",
            f"• Status: {pretty_phase(project.methodology, task.status)}",
            f"• Priority: {task.priority}",
            f"• Assigned to: {task.assignee.name if task.assignee else 'Unassigned'}",
        ]
        if task.end_date:
            due = f"• Due: {task.end_date.strftime('%Y-%m-%d')}"
            if task.end_date < datetime.now() and task.status != TaskStatus.DONE.value:
                due += " (OVERDUE)"
            lines.append(due)
        if task.description:
            lines.append(f"• Description: {task.description}")
        return "\n".join(lines)

    def task_assignments(self, project: Project) -> str:
        tasks = crud.get_tasks_by_project(self.db, project.id)
        if not tasks:
            return "No tasks found in this project."
        lines = ["Task assignments:", ""]
        for task in tasks:
            lines.append(f"• **Task #{task.id}** ({task.title}): {task.assignee.name if task.assignee else 'Unassigned'}")
        return "\n".join(lines)

    def owner_info(self, project: Project) -> str:
        owner = crud.get_user(self.db, project.created_by) if project.created_by else None
        if owner is None:
            return "Project owner not found."
        return f"Project owner: {owner.name} ({owner.email})"

    def member_info(self, project: Project, text: str) -> str:
        members = self.resolver.candidates(project)
        if re.search(r"\bhow\s+many\b|\bcount\b", text):
            return f"There are {len(members)} project members."
        if not members:
            return "No team members found."
        return "Team members: " + ", ".join(m.name for m in members)

    def count_answer(self, project: Project, text: str) -> str:
        snapshot = self.snapshot(project)["tasks"]

        for priority in PRIORITIES:
            if re.search(rf"\b{priority}\b", text):
                return f"There are {snapshot['by_priority'][priority]} {priority} priority task(s)."

        if "overdue" in text:
            return f"There are {snapshot['overdue']} overdue task(s)."

        words = re.sub(r"[^a-z\s\-]", " ", text).split()
        for size in (2, 1):
            for start in range(len(words) - size + 1):
                status = self.resolver.resolve_status_token(project, " ".join(words[start:start + size]))
                if status:
                    label = pretty_phase(project.methodology, status)
                    return f"There are {snapshot['by_status'][status]} task(s) in {label}."

        return f"There are a total of {snapshot['total']} tasks in the project."

    def overview(self, project: Project) -> str:
        snapshot = self.snapshot(project)["tasks"]
        lines = ["📊 **Project Overview**", f"Total Tasks: {snapshot['total']}", "", "By Status:"]
        for status in STATUSES:
            lines.append(f"• {pretty_phase(project.methodology, status)}: {snapshot['by_status'][status]}")
        lines.extend(["", "By Priority:"])
        for priority in PRIORITIES:
            lines.append(f"• {priority.capitalize()}: {snapshot['by_priority'][priority]}")
        if snapshot["overdue"] > 0:
            lines.extend(["", f"⚠️ Overdue Tasks: {snapshot['overdue']}"])
        return "\n".join(lines)

    def all_tasks(self, project: Project) -> str:
        tasks = crud.get_tasks_by_project(self.db, project.id)
        if not tasks:
            return "No tasks found in this project."
        return self.format_task_list(project, tasks)

    def task_listing(self, project: Project, message: str) -> str:
        """Tasks matching the filters mentioned in a question."""
        text = message.lower()
        lookup = self.queries.parse_lookup_filters(project, message)

        simple: Dict[str, Any] = {}
        if "overdue" in text:
            simple["overdue"] = True
        if "unassigned" in text:
            simple["unassigned"] = True
        if re.search(r"\b(my|mine)\b", text):
            simple["assigned_to_hint"] = "__me__"
        match = re.search(r"\b(low|medium|high|urgent)\b", text)
        if match:
            simple["priority"] = match.group(1)
        if lookup.status:
            simple["status"] = lookup.status

        targeted = (
            lookup.task_id or lookup.assignee_hint or lookup.creator_hint or lookup.milestone
            or lookup.created_period or lookup.due_period or lookup.has_window
        )
        tasks = self.queries.find_tasks(project, lookup) if targeted else []
        if not tasks and simple:
            tasks = self.queries.build_query(project, simple).all()
        elif not tasks and not targeted:
            tasks = self.queries.find_tasks(project, lookup) if lookup.keywords else []
            if not tasks and not re.search(r"[\"']", message):
                tasks = crud.get_tasks_by_project(self.db, project.id)

        if not tasks:
            return "No tasks found matching your criteria."
        return self.format_task_list(project, tasks)

    def format_task_list(self, project: Project, tasks: List[Task]) -> str:
        count = len(tasks)
        noun = "task" if count == 1 else "tasks"
        now = datetime.now()

        if count <= LIST_DETAIL_LIMIT:
            lines = [f"Found {count} {noun}:", ""]
            for task in tasks:
                details = [pretty_phase(project.methodology, task.status), f"{task.priority} priority"]
                details.append(f"assigned to {task.assignee.name}" if task.assignee else "unassigned")
                if task.end_date and task.end_date < now and task.status != TaskStatus.DONE.value:
                    details.append("**OVERDUE**")
                lines.append(f"• **Task #{task.id}**: {task.title} ({', '.join(details)})")
            return "\n".join(lines)

        ids = ", ".join(f"#{task_id}" for task_id in sorted(task.id for task in tasks))
        lines = [f"Found {count} {noun}. Task IDs: {ids}", "", "Status breakdown:"]
        for status in STATUSES:
            status_count = sum(1 for task in tasks if task.status == status)
            if status_count:
                lines.append(f"• {pretty_phase(project.methodology, status)}: {status_count}")
        return "\n".join(lines)

    def weekly_report(self, project: Project) -> str:
        start, end = date_range("this week")
        base = self.db.query(Task).filter(Task.project_id == project.id)

        completed = base.filter(Task.status == TaskStatus.DONE.value, Task.updated_at.between(start, end)).count()
        created = base.filter(Task.created_at.between(start, end)).count()
        due = base.filter(
            Task.status.in_(OPEN_STATUSES), Task.end_date.isnot(None), Task.end_date.between(start, end)
        ).order_by(Task.end_date.asc()).all()
        snapshot = self.snapshot(project)["tasks"]

        lines = [
            f"📅 **Weekly Progress** ({start.strftime('%b %d')} – {end.strftime('%b %d')})",
            f"• Completed this week: {completed}",
            f"• Created this week: {created}",
            f"• Still open and due this week: {len(due)}",
            f"• Overdue: {snapshot['overdue']}",
        ]
        for task in due[:5]:
            lines.append(f"  - #{task.id} {task.title} (due {task.end_date.strftime('%a %b %d')})")
        done = snapshot["by_status"][TaskStatus.DONE.value]
        if snapshot["total"]:
            lines.append(f"Overall: {done}/{snapshot['total']} tasks done ({round(100 * done / snapshot['total'])}%).")
        return "\n".join(lines)

    def help_text(self, project: Optional[Project] = None) -> str:
        return "\n".join([
            "I can help you with questions and commands. Try:",
            "",
            "**Questions:**",
            "• 'How many tasks are done?'",
            "• 'What are the task IDs?'",
            "• 'Show all tasks'",
            "• 'List overdue tasks'",
            "• 'Who is the owner?'",
            "• 'Show project overview'",
            "",
            "**Commands:**",
            "• 'Create task \"Fix login bug\"'",
            "• 'Move #42 to done'",
            "• 'Assign #42 to Alex'",
        ])

    # ------------------------------------------------------------------
    # Project snapshot
    # ------------------------------------------------------------------

    def snapshot(self, project: Project) -> Dict[str, Any]:
        """Task counts by status and priority plus overdue and member totals."""
        by_status = {status: 0 for status in STATUSES}
        for status, count in (
            self.db.query(Task.status, func.count(Task.id))
            .filter(Task.project_id == project.id)
            .group_by(Task.status)
            .all()
        ):
            if status in by_status:
                by_status[status] = count

        by_priority = {priority: 0 for priority in PRIORITIES}
        for priority, count in (
            self.db.query(Task.priority, func.count(Task.id))
            .filter(Task.project_id == project.id)
            .group_by(Task.priority)
            .all()
        ):
            if priority in by_priority:
                by_priority[priority] = count

        owner = crud.get_user(self.db, project.created_by) if project.created_by else None
        return {
            "project": {
                "id": project.id,
                "name": project.name,
                "methodology": project.methodology,
                "owner": {"id": owner.id, "name": owner.name, "email": owner.email} if owner else None,
                "start_date": project.start_date.isoformat() if project.start_date else None,
                "end_date": project.end_date.isoformat() if project.end_date else None,
            },
            "tasks": {
                "total": sum(by_status.values()),
                "by_status": by_status,
                "by_priority": by_priority,
                "overdue": self.queries.count_overdue(project),
            },
            "members": len(self.resolver.candidates(project)),
        }

    # ------------------------------------------------------------------
    # Completion backend
    # ------------------------------------------------------------------

    def answer_with_llm(
        self,
        project: Project,
        message: str,
        history: List[Dict[str, Any]],
        rephrased: Optional[str] = None,
    ) -> Optional[str]:
        context = self.snapshot(project)
        context["tasks_detail"] = [
            task_summary(task, project.methodology) for task in crud.get_tasks_by_project(self.db, project.id)
        ]

        messages = [
            {"role": "system", "content": ANSWER_PROMPT},
            {"role": "system", "content": "PROJECT_DATA:\n" + json.dumps(context, indent=2, default=str)},
        ]
        for turn in history[-10:]:
            if turn.get("content"):
                role = "assistant" if turn.get("role") == "assistant" else "user"
                messages.append({"role": role, "content": str(turn["content"])})

        question = rephrased or message
        if requires_conversation_context(message, history):
            question = f"[Follow-up question referring to previous context] {question}"
        messages.append({"role": "user", "content": question})

        try:
            result = self.client.complete(messages, temperature=0.2, json_mode=False)
        except UpstreamError as e:
            logger.error(f"Question answering call failed: {e.message}")
            return None

        text = str(result.get("content") or "").strip()
        return sanitize_answer(text) if text else None
