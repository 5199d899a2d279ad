"""
Command plan generation.

Turns a command message into a plan dictionary the executor can apply
after the user confirms it:

    {"type": ..., "selector": {"id": N}, "payload": {...}, "changes": {...},
     "filters": {...}, "updates": {...}, "assignee": "..."}

A plan hint from the router is used when it validates. Otherwise the
message is compiled with local patterns, then by the completion backend
when one is configured. Invalid plans never leave this module: the caller
gets an explanatory message and no command data.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from database.orm_models import Project, Task
from src.conversation.dates import parse_relative_date
from src.conversation.entity_resolver import EntityResolver
from src.conversation.methodology import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    STATUSES,
    nth_stage_to_status,
    pretty_phase,
)
from src.conversation.question_answering import provide_suggestions
from src.conversation.task_query import TaskQueryBuilder, parse_ordinal_window
from src.llms.llm import CompletionClient
from src.utils.errors import (
    AuthorizationError,
    NotFoundError,
    ProjectManagementError,
    UpstreamError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PLAN_TYPES = (
    "create_task",
    "task_update",
    "task_delete",
    "bulk_update",
    "bulk_assign",
    "bulk_delete",
    "bulk_delete_overdue",
    "bulk_delete_all",
    "update_project",
)
BULK_FILTER_TYPES = ("bulk_update", "bulk_assign", "bulk_delete")
PROJECT_FIELDS = ("name", "description", "start_date", "end_date")
PLAN_KEYS = ("type", "selector", "payload", "changes", "filters", "updates", "assignee")

# Keys are lowercase with "-" and "_" removed
TYPE_SYNONYMS = {
    "createtask": "create_task", "create": "create_task", "newtask": "create_task", "addtask": "create_task",
    "taskupdate": "task_update", "update": "task_update", "updatetask": "task_update",
    "edittask": "task_update", "movetask": "task_update",
    "taskdelete": "task_delete", "delete": "task_delete", "deletetask": "task_delete", "removetask": "task_delete",
    "bulkupdate": "bulk_update", "massupdate": "bulk_update",
    "bulkassign": "bulk_assign", "assign": "bulk_assign", "assignall": "bulk_assign",
    "bulkdelete": "bulk_delete", "deletefiltered": "bulk_delete",
    "deleteoverdue": "bulk_delete_overdue", "bulkdeleteoverdue": "bulk_delete_overdue",
    "deleteall": "bulk_delete_all", "clearall": "bulk_delete_all", "bulkdeleteall": "bulk_delete_all",
    "updateproject": "update_project", "projectupdate": "update_project",
}

_WEEKLY_RE = re.compile(r"\b(weekly|week)\b.*\b(progress|report|summary)\b")
_NTH_STAGE_RE = re.compile(
    r"\bmove\s+(?:all\s+)?tasks?\s+(?:to|into)\s+(?:the\s+)?(first|second|third|fourth|last)\s+(?:stage|column|phase)\b", re.I
)
_CREATE_RE = re.compile(
    r"\b(?:create|add|new|make)\s+(?:a\s+)?(?:new\s+)?task\s+(?:called\s+|named\s+|titled\s+)?[\"']?(.+?)[\"']?$", re.I
)
_PROJECT_FIELD_RE = re.compile(
    r"\b(?:set|change|update|rename)\s+(?:the\s+)?project(?:'s)?\s+"
    r"(name|title|description|start\s+date|end\s+date|due\s+date|deadline)\s+(?:to|as)\s+[\"']?(.+?)[\"']?$", re.I
)
_PROJECT_RENAME_RE = re.compile(r"\brename\s+(?:the\s+|this\s+)?project\s+(?:to|as)\s+[\"']?(.+?)[\"']?$", re.I)
_DELETE_RE = re.compile(r"\b(?:delete|remove|destroy|purge|drop)\b", re.I)
_TASK_ID_RE = re.compile(r"(?:#|\btask\s+(?:id\s+)?#?|\bid\s+)(\d+)\b", re.I)
_BARE_NUMBER_RE = re.compile(r"\b(\d+)\b")
_ASSIGN_TO_RE = re.compile(r"\bassign\b.*?\bto\s+(@?[a-z0-9._@'\- ]+)", re.I)
_PRONOUN_ASSIGN_RE = re.compile(
    r"\bassign\b.*\b(?:all\s+of\s+)?(?:them|these|those)\b.*\bto\s+(me|myself|owner)\b", re.I
)
_PRONOUN_STATUS_RE = re.compile(
    r"\b(?:move|set|mark)\b.*\b(?:all\s+of\s+)?(?:them|these|those)\b.*\b(?:to|as)\s+([a-z\- ]{3,20})", re.I
)
_PRONOUN_RE = re.compile(r"\b(them|these|those)\b", re.I)
_HINT_STOPWORDS = {
    "all", "the", "every", "each", "task", "tasks", "today", "tomorrow", "next", "this",
    "low", "medium", "high", "urgent", "me", "my",
}


@dataclass
class PlanResult:
    preview_message: str
    command_data: Optional[Dict[str, Any]] = None

    @property
    def is_command(self) -> bool:
        return self.command_data is not None

    def to_dict(self) -> Dict[str, Any]:
        return {"preview_message": self.preview_message, "command_data": self.command_data}


def normalize_type(value: Optional[str]) -> Optional[str]:
    """Map a plan type or one of its synonyms to the canonical plan type."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip().lower()
    if text in PLAN_TYPES:
        return text
    key = text.replace("-", "").replace("_", "").replace(" ", "")
    return TYPE_SYNONYMS.get(key, text)


def _words_prefixes(phrase: str, max_words: int = 3) -> List[str]:
    words = phrase.strip().split()[:max_words]
    return [" ".join(words[:size]) for size in range(len(words), 0, -1)]


def _clean_hint(raw: str) -> str:
    hint = re.split(r"\s+(?:and|with|for|please|then)\b|[,.;!?]", raw.strip(), maxsplit=1)[0]
    return hint.strip().strip("\"'")


def parse_task_ids(values) -> List[int]:
    """Task ids from a list of ints or "#N" strings. Raises ValidationError on anything else."""
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError("Task ids must be a non-empty list.", {"ids": values})
    ids = []
    for value in values:
        raw = str(value).strip().lstrip("#")
        if isinstance(value, bool) or not raw.isdigit():
            raise ValidationError(f"Invalid task id: {value}", {"ids": values})
        ids.append(int(raw))
    return ids


def check_plan_shape(plan) -> None:
    """Reject plans whose sections aren't mappings or whose filter ids aren't task ids."""
    if not isinstance(plan, dict):
        raise ValidationError("Malformed command plan.")
    for key in ("selector", "payload", "changes", "filters", "updates"):
        if plan.get(key) is not None and not isinstance(plan[key], dict):
            raise ValidationError(f"Malformed command plan: {key} must be an object.", {"section": key})
    filters = plan.get("filters") or {}
    if filters.get("ids") is not None:
        parse_task_ids(filters["ids"])
    if plan.get("assignee") is not None and not isinstance(plan["assignee"], (str, int)):
        raise ValidationError("Malformed command plan: assignee must be a name or id.")


class PlanGenerator:
    """Builds and validates command plans for one request."""

    def __init__(
        self,
        resolver: EntityResolver,
        queries: TaskQueryBuilder,
        qa=None,
        client: Optional[CompletionClient] = None,
    ):
        self.resolver = resolver
        self.queries = queries
        self.db = resolver.db
        self.qa = qa
        self.client = client

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def generate_plan(
        self,
        project: Project,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        llm_plan: Optional[Dict[str, Any]] = None,
    ) -> PlanResult:
        history = history or []
        text = (message or "").strip()
        lowered = text.lower()

        if self.qa is not None and _WEEKLY_RE.search(lowered):
            return PlanResult(self.qa.weekly_report(project))

        plan = None
        if isinstance(llm_plan, dict) and llm_plan.get("type"):
            try:
                candidate = self.normalize_plan(project, llm_plan)
            except ValidationError as e:
                candidate, error = None, e
            else:
                error = self._validation_error(project, candidate)
            if error is None:
                plan = candidate
            else:
                logger.debug(f"Discarding router plan hint: {error.message}")

        if plan is None:
            try:
                plan = self.compile_local(project, text, history)
            except ProjectManagementError as e:
                return PlanResult(e.message)

        if plan is None:
            plan = self.synthesize_with_llm(project, text, history)
        if plan is None:
            return PlanResult(provide_suggestions(text))

        error = self._validation_error(project, plan)
        if error is not None:
            repaired = self.repair_with_llm(project, text, plan, error.message)
            if repaired is None or self._validation_error(project, repaired) is not None:
                logger.info(f"Plan rejected: {error.message}")
                return PlanResult(error.message)
            plan = repaired

        plan = self._clean(plan)
        logger.info(f"Planned {plan['type']} for project {project.id}")
        return PlanResult(self.preview(project, plan), plan)

    # ------------------------------------------------------------------
    # Normalization and validation
    # ------------------------------------------------------------------

    def normalize_plan(self, project: Project, plan: Dict[str, Any]) -> Dict[str, Any]:
        """
        Canonicalize type, status and priority values of a raw plan.

        Unknown status or priority values are dropped from payload, changes
        and updates. In filters they raise ValidationError, since dropping a
        condition would widen the selection.
        """
        check_plan_shape(plan)
        plan = {k: (dict(v) if isinstance(v, dict) else v) for k, v in plan.items()}

        for key in ("changes", "payload", "updates", "filters"):
            section = plan.get(key)
            if not isinstance(section, dict):
                continue
            if section.get("status") is not None:
                status = self.resolver.resolve_status_token(project, section["status"])
                if status:
                    section["status"] = status
                elif key == "filters":
                    raise ValidationError(f'Unknown status "{section["status"]}".', {"status": section["status"]})
                else:
                    section.pop("status")
            if section.get("priority") is not None:
                priority = self.resolver.resolve_priority_token(section["priority"])
                if priority:
                    section["priority"] = priority
                elif key == "filters":
                    raise ValidationError(f'Unknown priority "{section["priority"]}".', {"priority": section["priority"]})
                else:
                    section.pop("priority")

        filters = plan.get("filters")
        if isinstance(filters, dict):
            if filters.get("assigned_to_hint"):
                filters.pop("all", None)
            if filters.get("ids") is not None:
                filters["ids"] = parse_task_ids(filters["ids"])

        selector = plan.get("selector")
        if isinstance(selector, dict) and selector.get("id") is not None:
            raw_id = str(selector["id"]).lstrip("#")
            selector["id"] = int(raw_id) if raw_id.isdigit() else 0

        if not plan.get("assignee") and plan.get("assignee_hint"):
            plan["assignee"] = plan["assignee_hint"]

        plan["type"] = normalize_type(plan.get("type"))
        return plan

    def _validation_error(self, project: Project, plan: Dict[str, Any]) -> Optional[ProjectManagementError]:
        try:
            self.validate_plan(project, plan)
        except (ValidationError, NotFoundError, AuthorizationError) as e:
            return e
        return None

    def validate_plan(self, project: Project, plan: Dict[str, Any]) -> None:
        """Raise ValidationError, NotFoundError or AuthorizationError for an unusable plan."""
        check_plan_shape(plan)
        plan_type = normalize_type(plan.get("type"))
        if not plan_type:
            raise ValidationError("I couldn't understand that command. Please be more specific.")
        if plan_type not in PLAN_TYPES:
            raise ValidationError("Unsupported command type.", {"type": plan_type})

        if plan_type in ("task_update", "task_delete"):
            selector = plan.get("selector") or {}
            try:
                task_id = int(selector.get("id") or 0)
            except (TypeError, ValueError):
                task_id = 0
            if task_id <= 0:
                raise ValidationError("A specific task ID (e.g., #123) is required for this action.")
            if not self._task_exists(project, task_id):
                raise NotFoundError(f"Task #{task_id} was not found in this project.", {"task_id": task_id})
            if plan_type == "task_update":
                changes = plan.get("changes") or {}
                if not changes:
                    raise ValidationError('Please specify what to change (e.g., "set priority to high").')
                self._check_assignee(project, changes.get("assignee_hint"))

        if plan_type in BULK_FILTER_TYPES:
            filters = plan.get("filters") or {}
            if not filters:
                raise ValidationError('Please specify which tasks to affect (e.g., "all overdue tasks").')
            if self.queries.count_affected(project, filters) <= 0:
                raise ValidationError("No tasks match the specified filters.")
            if plan_type == "bulk_update":
                updates = plan.get("updates") or {}
                if not updates:
                    raise ValidationError('Please specify what to update (e.g., "move to done").')
                self._check_assignee(project, updates.get("assignee_hint"))
            if plan_type == "bulk_assign":
                if not plan.get("assignee"):
                    raise ValidationError("Please specify who to assign the tasks to.")
                self._check_assignee(project, plan["assignee"])

        if plan_type == "bulk_delete_overdue" and self.queries.count_overdue(project) <= 0:
            raise ValidationError("No overdue tasks found.")

        if plan_type == "bulk_delete_all" and self._task_count(project) <= 0:
            raise ValidationError("No tasks to delete.")

        if plan_type == "create_task":
            payload = plan.get("payload") or {}
            if not str(payload.get("title") or "").strip():
                raise ValidationError("A title is required to create a task.")

        if plan_type == "update_project":
            if not self.resolver.access.is_project_creator(project):
                raise AuthorizationError("Only the project creator can update project details.")
            changes = plan.get("changes") or {}
            if not any(field in changes for field in PROJECT_FIELDS):
                raise ValidationError("Please specify a project field to update (name, description, start date or end date).")

    def _check_assignee(self, project: Project, hint) -> None:
        if hint and self.resolver.resolve_assignee_id(project, hint) is None:
            raise ValidationError(f'I couldn\'t find a project member matching "{hint}".', {"assignee": hint})

    def _task_exists(self, project: Project, task_id: int) -> bool:
        return self.db.query(Task.id).filter(Task.project_id == project.id, Task.id == task_id).first() is not None

    def _task_count(self, project: Project) -> int:
        return self.db.query(Task).filter(Task.project_id == project.id).count()

    def _clean(self, plan: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {"type": normalize_type(plan.get("type"))}
        for key in PLAN_KEYS[1:]:
            value = plan.get(key)
            if value not in (None, {}, ""):
                cleaned[key] = value
        return cleaned

    # ------------------------------------------------------------------
    # Local compilation
    # ------------------------------------------------------------------

    def compile_local(self, project: Project, message: str, history: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Compile a plan from message patterns.

        Returns None when no pattern applies. Raises NotFoundError or
        ValidationError when the message is clearly a command that can't
        be carried out (unknown task id, delete without a target).
        """
        text = message.strip()
        lowered = text.lower()

        window = parse_ordinal_window(lowered)
        if window:
            updates = self.parse_bulk_updates(project, text)
            if updates:
                return self._bulk_update_plan({"all": True, **window}, updates)

        match = _NTH_STAGE_RE.search(lowered)
        if match:
            status = nth_stage_to_status(match.group(1))
            if status:
                return self._bulk_update_plan({"all": True}, {"status": status})

        match = _CREATE_RE.search(text)
        if match and match.group(1).strip():
            return {
                "type": "create_task",
                "payload": {"title": match.group(1).strip(), "status": DEFAULT_STATUS, "priority": DEFAULT_PRIORITY},
            }

        plan = self.parse_project_update(text)
        if plan:
            return plan

        if _DELETE_RE.search(text):
            return self.parse_delete_command(project, text)

        match = _TASK_ID_RE.search(text)
        if match and len(re.findall(r"#(\d+)", text)) <= 1:
            changes = self.parse_task_updates(project, text)
            if changes:
                return {"type": "task_update", "selector": {"id": int(match.group(1))}, "changes": changes}

        filters = self.parse_filters(project, text)
        updates = self.parse_bulk_updates(project, text)
        if updates:
            if not filters:
                filters = self._pronoun_scope(text, history) or {"all": True}
            if window:
                filters.update(window)
            return self._bulk_update_plan(filters, updates)

        if _PRONOUN_ASSIGN_RE.search(lowered):
            scope = self._pronoun_scope(text, history) or {"all": True}
            target = "__owner__" if "owner" in lowered else "__me__"
            return {"type": "bulk_assign", "filters": scope, "assignee": target}

        match = _ASSIGN_TO_RE.search(text)
        if match:
            plan = self.parse_assign_command(project, text, match.group(1), history)
            if window and plan.get("type") == "bulk_assign":
                plan["filters"].update(window)
            return plan

        match = _PRONOUN_STATUS_RE.search(lowered)
        if match:
            status = self._status_from_prefix(project, match.group(1))
            if status:
                return self._bulk_update_plan(self._pronoun_scope(text, history) or {"all": True}, {"status": status})

        return None

    def _bulk_update_plan(self, filters: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "bulk_update", "filters": filters, "updates": updates}

    def _status_from_prefix(self, project: Project, phrase: str) -> Optional[str]:
        for candidate in _words_prefixes(phrase):
            status = self.resolver.resolve_status_token(project, candidate)
            if status:
                return status
        return None

    def _status_from_suffix(self, project: Project, phrase: str) -> Optional[str]:
        words = phrase.strip().split()
        for size in (2, 1):
            if len(words) >= size:
                status = self.resolver.resolve_status_token(project, " ".join(words[-size:]))
                if status:
                    return status
        return None

    def _date_from_phrase(self, phrase: str) -> Optional[str]:
        """First word-prefix of the phrase that parses as a date, as YYYY-MM-DD."""
        cleaned = re.split(r"\s+(?:and|with|for)\b|[,;!?]", phrase.strip(), maxsplit=1)[0]
        for candidate in _words_prefixes(cleaned, max_words=4):
            parsed = parse_relative_date(candidate)
            if parsed:
                return parsed.date().isoformat()
        return None

    def _pronoun_scope(self, message: str, history: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Tasks referenced by "them/these/those": ids listed in the latest assistant reply."""
        if not _PRONOUN_RE.search(message):
            return None
        for turn in reversed(history[-8:]):
            if turn.get("role") != "assistant":
                continue
            ids = [int(i) for i in re.findall(r"#(\d+)", str(turn.get("content") or ""))]
            if ids:
                return {"ids": sorted(set(ids))}
        return None

    def parse_task_updates(self, project: Project, message: str) -> Dict[str, Any]:
        """Field changes for a single-task update command."""
        changes: Dict[str, Any] = {}
        lowered = message.lower()

        if re.search(r"\bpriority\b", lowered):
            match = re.search(r"\b(low|medium|high|urgent|critical|blocker|p[0-3])\b", lowered)
            if match:
                priority = self.resolver.resolve_priority_token(match.group(1))
                if priority:
                    changes["priority"] = priority

        match = re.search(r"\b(?:move|set|mark|status)\b.*?\b(?:to|in|as|into)\s+([a-z\- ]+)", lowered)
        if match:
            status = self._status_from_prefix(project, match.group(1))
            if status:
                changes["status"] = status

        match = _ASSIGN_TO_RE.search(message)
        if match:
            hint = _clean_hint(match.group(1))
            if hint:
                changes["assignee_hint"] = hint

        for pattern in (
            r"\b(?:due(?:\s+date)?|deadline|end\s+date)\b.*?\b(?:to|on|by|for|as|is)\s+(.+)$",
            r"\b(?:due(?:\s+date)?|deadline|end\s+date)\b\s*(.+)$",
        ):
            match = re.search(pattern, message, re.I)
            end_date = self._date_from_phrase(match.group(1)) if match else None
            if end_date:
                changes["end_date"] = end_date
                break

        match = re.search(r"\bstart\s+date\b\s*(?:on|to|as|is)?\s*(.+)$", message, re.I)
        if match:
            start_date = self._date_from_phrase(match.group(1))
            if start_date:
                changes["start_date"] = start_date

        match = re.search(r"\b(?:title|rename|set\s+title)\b.*?\"([^\"]+)\"", message, re.I)
        if match:
            changes["title"] = match.group(1).strip()
        else:
            match = re.search(r"\brename\b.*?\bto\s+(.+)$", message, re.I)
            if match:
                changes["title"] = match.group(1).strip().strip("\"'")

        match = re.search(
            r"\b(?:append|add)\s+(?:to\s+(?:the\s+)?description|(?:a\s+)?note)\s*:?\s*[\"'](.+?)[\"']$", message, re.I
        )
        if match:
            changes["description"] = match.group(1).strip()
            changes["_mode"] = "append_desc"
        else:
            for pattern in (
                r"\b(?:update|set|change)\s+(?:the\s+)?description\s+(?:of\s+task\s+#?\d+\s+)?(?:to|as)\s+[\"'](.+?)[\"']$",
                r"\bdescription\s+(?:to|as)\s+[\"'](.+?)[\"']$",
                r"\b(?:set|update)\s+description[:\s]+[\"'](.+?)[\"']$",
            ):
                match = re.search(pattern, message, re.I)
                if match:
                    changes["description"] = match.group(1).strip()
                    break

        return changes

    def parse_bulk_updates(self, project: Project, message: str) -> Dict[str, Any]:
        """Field changes for a filtered bulk update."""
        updates: Dict[str, Any] = {}
        lowered = message.lower()

        match = re.search(r"\bmove\b(.*)$", lowered)
        targets = re.findall(r"\b(?:to|into)\s+(?=([a-z\- ]+))", match.group(1)) if match else []
        match = re.search(r"\b(?:mark|set)\b.*?\bas\s+([a-z\- ]+)", lowered)
        if match:
            targets.append(match.group(1))
        for target in targets:
            status = self._status_from_prefix(project, target)
            if status:
                updates["status"] = status
                break

        match = re.search(r"\b(?:set|change|update)\s+(?:all\s+)?(?:the\s+)?priority\s+(?:of\s+.+?\s+)?(?:to|as)\s+([a-z0-9]+)", lowered)
        if match:
            priority = self.resolver.resolve_priority_token(match.group(1))
            if priority:
                updates["priority"] = priority

        match = re.search(r"\b(?:update|set|change)\b.*\b(?:due|end|deadline)(?:\s+date)?\b.*\bto\s+([^\.]+)$", message, re.I)
        if match:
            end_date = self._date_from_phrase(match.group(1))
            if end_date:
                updates["end_date"] = end_date

        return updates

    def parse_filters(self, project: Project, message: str) -> Dict[str, Any]:
        """Task filters mentioned in a bulk command."""
        filters: Dict[str, Any] = {}
        lowered = message.lower()

        ids = [int(i) for i in re.findall(r"#(\d+)", message)]
        if ids:
            filters["ids"] = ids

        match = re.search(r"\b(low|medium|high|urgent)\s+priority\b", lowered) or \
            re.search(r"\b(low|medium|high|urgent)\s+tasks?\b", lowered)
        if match:
            filters["priority"] = self.resolver.resolve_priority_token(match.group(1))

        match = re.search(r"\bstatus\s+(?:is\s+)?([a-z\- ]+)", lowered)
        status = self._status_from_prefix(project, match.group(1)) if match else None
        if not status:
            for phrase in re.finditer(r"\b((?:[a-z\-]+\s)?[a-z\-]+)\s+tasks?\b", lowered):
                status = self._status_from_suffix(project, phrase.group(1))
                if status:
                    break
        if status:
            filters["status"] = status

        if "overdue" in lowered:
            filters["overdue"] = True
        if "unassigned" in lowered:
            filters["unassigned"] = True

        if re.search(r"\bmy\b", lowered):
            filters["assigned_to_hint"] = "__me__"
        if re.search(r"\bowner'?s\b", lowered):
            filters["assigned_to_hint"] = "__owner__"
        match = re.search(r"\b([A-Za-z]+)'s\s+tasks\b", message)
        if match and match.group(1).lower() not in ("owner", "project"):
            filters["assigned_to_hint"] = match.group(1)
        match = re.search(r"\bassigned\s+to\s+(@?[a-z0-9._\-]{2,40})\b", lowered) or \
            re.search(r"\bfor\s+(@?[a-z0-9._\-]{2,40})\b(?!\s+priority)", lowered)
        if match and match.group(1).lstrip("@") not in _HINT_STOPWORDS:
            filters["assigned_to_hint"] = match.group(1).lstrip("@")

        if re.search(r"\ball\s+(?:the\s+)?tasks?\b", lowered) or re.search(r"\beverything\b", lowered):
            filters["all"] = True

        if "priority" in str(filters.get("assigned_to_hint", "")):
            filters.pop("assigned_to_hint")
        if filters.get("priority") is None:
            filters.pop("priority", None)
        return filters

    def parse_delete_command(self, project: Project, message: str) -> Dict[str, Any]:
        lowered = message.lower()

        match = _TASK_ID_RE.search(message) or _BARE_NUMBER_RE.search(message)
        if match:
            task_id = int(match.group(1))
            if not self._task_exists(project, task_id):
                raise NotFoundError(f"Task #{task_id} not found in this project.", {"task_id": task_id})
            return {"type": "task_delete", "selector": {"id": task_id}}

        filters = self.parse_filters(project, message)
        filters.pop("all", None)
        if filters == {"overdue": True}:
            return {"type": "bulk_delete_overdue"}
        if filters:
            return {"type": "bulk_delete", "filters": filters}
        if re.search(r"\b(?:all|everything)\b", lowered):
            return {"type": "bulk_delete_all"}

        raise ValidationError(
            'Please specify which tasks to delete (e.g., "delete #123", "delete all overdue tasks").'
        )

    def parse_assign_command(
        self, project: Project, message: str, raw_assignee: str, history: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        assignee = _clean_hint(raw_assignee)
        if assignee.lower() in ("me", "myself"):
            assignee = "__me__"
        elif assignee.lower() in ("owner", "the owner", "project owner"):
            assignee = "__owner__"

        match = _TASK_ID_RE.search(message)
        if match and len(re.findall(r"#(\d+)", message)) <= 1:
            return {"type": "task_update", "selector": {"id": int(match.group(1))}, "changes": {"assignee_hint": assignee}}

        filters = self.parse_filters(project, message)
        filters.pop("assigned_to_hint", None)
        if not filters:
            filters = self._pronoun_scope(message, history) or {"all": True}
        return {"type": "bulk_assign", "filters": filters, "assignee": assignee}

    def parse_project_update(self, message: str) -> Optional[Dict[str, Any]]:
        match = _PROJECT_RENAME_RE.search(message)
        if match:
            return {"type": "update_project", "changes": {"name": match.group(1).strip()}}

        match = _PROJECT_FIELD_RE.search(message)
        if not match:
            return None
        field = re.sub(r"\s+", " ", match.group(1).lower())
        value = match.group(2).strip()
        if field in ("name", "title"):
            return {"type": "update_project", "changes": {"name": value}}
        if field == "description":
            return {"type": "update_project", "changes": {"description": value}}

        parsed = parse_relative_date(value)
        if not parsed:
            raise ValidationError(f'I couldn\'t read "{value}" as a date.')
        key = "start_date" if field == "start date" else "end_date"
        return {"type": "update_project", "changes": {key: parsed.date().isoformat()}}

    # ------------------------------------------------------------------
    # Completion backend
    # ------------------------------------------------------------------

    def _system_prompt(self, project: Project) -> str:
        labels = ", ".join(f"{s}={pretty_phase(project.methodology, s)}" for s in STATUSES)
        return "\n".join([
            "You are a strict command planner for a project management system.",
            f"Methodology: {project.methodology}. Status labels: {labels}.",
            "Return ONLY a valid JSON object with this structure:",
            '{"type": "create_task|task_update|task_delete|bulk_update|bulk_assign|bulk_delete|'
            'bulk_delete_overdue|bulk_delete_all|update_project", "selector": {"id": 123}, '
            '"payload": {"title": "...", "description": "..."}, '
            '"changes": {"status": "done", "priority": "high", "description": "...", "title": "...", '
            '"assignee_hint": "user", "end_date": "YYYY-MM-DD"}, '
            '"filters": {"status": "todo"}, "updates": {"priority": "high"}, "assignee": "name"}',
            "",
            "RULES:",
            "1. Single task changes use task_update with selector.id and changes.",
            "2. Normalize statuses to: todo, inprogress, review, done.",
            "3. Normalize priorities to: low, medium, high, urgent.",
            '4. Use filters.assigned_to_hint for mentions like "Alice\'s tasks".',
            "5. Project changes use update_project with changes limited to name, description, start_date, end_date.",
            "6. Extract task IDs from patterns like '#238', 'task 238', 'task ID 238'.",
            "7. For unclear input, return an empty object {}.",
        ])

    def synthesize_with_llm(self, project: Project, message: str, history: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if self.client is None:
            return None

        recent = (
            self.db.query(Task)
            .filter(Task.project_id == project.id)
            .order_by(Task.updated_at.desc(), Task.id.desc())
            .limit(20)
            .all()
        )
        task_lines = "\n".join(f"#{t.id}: {t.title} ({t.status}, {t.priority})" for t in recent)
        system = self._system_prompt(project) + f"\n\nRECENT TASKS FOR CONTEXT:\n{task_lines}\n\nParse this user command and return the JSON action:"

        messages = [{"role": "system", "content": system}]
        for turn in history[-6:]:
            if turn.get("content"):
                messages.append({"role": "assistant" if turn.get("role") == "assistant" else "user",
                                 "content": str(turn["content"])})
        messages.append({"role": "user", "content": message})

        try:
            plan = self.client.complete(messages, temperature=0.1, json_mode=True)
        except UpstreamError as e:
            logger.warning(f"Plan synthesis failed: {e.message}")
            return None
        if not plan.get("type"):
            return None
        try:
            return self.normalize_plan(project, plan)
        except ValidationError as e:
            logger.warning(f"Discarding malformed completion plan: {e.message}")
            return None

    def repair_with_llm(self, project: Project, message: str, bad_plan: Dict[str, Any], reason: str) -> Optional[Dict[str, Any]]:
        if self.client is None:
            return None

        system = self._system_prompt(project) + (
            f"\nIMPORTANT: The previous plan was invalid because: {reason}\nFix the plan based on the user's message."
        )
        messages = [
            {"role": "system", "content": system},
            {"role": "assistant", "content": json.dumps(bad_plan, default=str)},
            {"role": "user", "content": message},
        ]
        try:
            plan = self.client.complete(messages, temperature=0.2, json_mode=True)
        except UpstreamError as e:
            logger.warning(f"Plan repair failed: {e.message}")
            return None
        if not plan.get("type"):
            return None
        try:
            return self.normalize_plan(project, plan)
        except ValidationError as e:
            logger.warning(f"Discarding malformed completion plan: {e.message}")
            return None

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview(self, project: Project, plan: Dict[str, Any]) -> str:
        """Human-readable description of what executing the plan will do."""
        plan_type = plan["type"]
        methodology = project.methodology

        if plan_type == "create_task":
            title = (plan.get("payload") or {}).get("title") or "Untitled"
            status = (plan.get("payload") or {}).get("status") or DEFAULT_STATUS
            return f'✅ Create a new task "{title}" in "{pretty_phase(methodology, status)}".'

        if plan_type == "task_delete":
            return f"🗑️ Permanently delete task #{plan['selector']['id']}."

        if plan_type == "task_update":
            return f"✏️ On task #{plan['selector']['id']}, {self.updates_human(plan.get('changes') or {}, methodology)}."

        if plan_type in BULK_FILTER_TYPES:
            filters = plan.get("filters") or {}
            count = self.queries.count_affected(project, filters)
            scope = self.filters_human(filters, methodology)
            noun = "task" if count == 1 else "tasks"
            lead = f"⚡ This will affect {count} {noun}" + (f" {scope}" if scope else "")
            if plan_type == "bulk_update":
                return f"{lead} and update them: {self.updates_human(plan.get('updates') or {}, methodology)}."
            if plan_type == "bulk_assign":
                return f'{lead} and assign them to "{self._hint_human(plan.get("assignee"))}".'
            return f"{lead} and permanently delete them."

        if plan_type == "bulk_delete_overdue":
            return f"🗑️ This will permanently delete {self.queries.count_overdue(project)} overdue task(s)."

        if plan_type == "bulk_delete_all":
            return f"⚠️ This will permanently delete ALL {self._task_count(project)} task(s) in this project."

        if plan_type == "update_project":
            changes = plan.get("changes") or {}
            parts = [
                f'{field.replace("_", " ")} to "{changes[field]}"'
                for field in PROJECT_FIELDS if field in changes
            ]
            return f"🛠️ Update project \"{project.name}\": set {', '.join(parts)}."

        logger.warning(f"Unknown command type in preview: {plan_type}")
        return "An unknown action is planned."

    def _hint_human(self, hint: Optional[str]) -> str:
        if hint in ("__me__", "me", "myself"):
            return "you"
        if hint in ("__owner__", "owner"):
            return "the project owner"
        return str(hint or "")

    def updates_human(self, updates: Dict[str, Any], methodology: str) -> str:
        pieces = []
        if updates.get("status"):
            pieces.append(f'set status to "{pretty_phase(methodology, updates["status"])}"')
        if updates.get("priority"):
            pieces.append(f"set priority to {updates['priority']}")
        if updates.get("assignee_hint"):
            pieces.append(f'assign to "{self._hint_human(updates["assignee_hint"])}"')
        if updates.get("end_date"):
            pieces.append(f"set due date to {updates['end_date']}")
        if updates.get("start_date"):
            pieces.append(f"set start date to {updates['start_date']}")
        if updates.get("title"):
            pieces.append(f'rename to "{updates["title"]}"')
        if "description" in updates:
            verb = "append to" if updates.get("_mode") == "append_desc" else "replace"
            pieces.append(f"{verb} the description")
        return ", ".join(pieces) if pieces else "make changes"

    def filters_human(self, filters: Dict[str, Any], methodology: str) -> str:
        parts = []
        if filters.get("ids"):
            parts.append("with ids " + ", ".join(f"#{i}" for i in filters["ids"]))
        if filters.get("status"):
            parts.append(f'in "{pretty_phase(methodology, filters["status"])}"')
        if filters.get("priority"):
            parts.append(f"with {filters['priority']} priority")
        if filters.get("overdue"):
            parts.append("that are overdue")
        if filters.get("unassigned"):
            parts.append("that are unassigned")
        if filters.get("assigned_to_hint"):
            parts.append(f'assigned to "{self._hint_human(filters["assigned_to_hint"])}"')
        if filters.get("limit"):
            which = "last" if filters.get("order") == "desc" else "first"
            parts.append(f"limited to the {which} {filters['limit']}")
        if not parts:
            return "on ALL tasks" if filters.get("all") else ""
        return "(" + " and ".join(parts) + ")"
