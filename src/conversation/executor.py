"""
Confirmed command execution.

Applies a plan produced by the plan generator. Single-task operations
re-check that the task still exists. Bulk selectors are re-queried here
and processed row by row with a commit per row, so an error partway
through a batch leaves the rows already processed committed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from database import crud
from database.orm_models import Project, Task
from src.conversation.dates import parse_date
from src.conversation.entity_resolver import EntityResolver
from src.conversation.methodology import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    OPEN_STATUSES,
    PRIORITIES,
    STATUSES,
)
from src.conversation.plan_generator import PROJECT_FIELDS, check_plan_shape, normalize_type, parse_task_ids
from src.conversation.task_query import TaskQueryBuilder
from src.utils.errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _to_datetime(value, field: str):
    if value in (None, ""):
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(f"Invalid date for {field.replace('_', ' ')}: {value}", {"field": field})
    return parsed


class CommandExecutor:
    """Executes confirmed command plans against the task store."""

    def __init__(self, resolver: EntityResolver, queries: TaskQueryBuilder):
        self.resolver = resolver
        self.queries = queries
        self.access = resolver.access
        self.db = resolver.db

    def execute(self, project: Project, plan: Dict[str, Any]) -> Dict[str, str]:
        """
        Apply a plan and return {"message": ...}.

        Raises:
            ValidationError: Malformed plan, missing or invalid fields,
                unresolved assignee, ambiguous rename
            NotFoundError: The selected task is not in the project
            AuthorizationError: Project update by someone other than the creator
        """
        plan = plan or {}
        check_plan_shape(plan)
        if plan.get("filters") and plan["filters"].get("ids") is not None:
            plan = {**plan, "filters": {**plan["filters"], "ids": parse_task_ids(plan["filters"]["ids"])}}
        plan_type = normalize_type(plan.get("type"))
        handler = {
            "create_task": self._create_task,
            "task_update": self._task_update,
            "task_delete": self._task_delete,
            "bulk_update": self._bulk_update,
            "bulk_assign": self._bulk_assign,
            "bulk_delete": self._bulk_delete,
            "bulk_delete_overdue": self._bulk_delete_overdue,
            "bulk_delete_all": self._bulk_delete_all,
            "update_project": self._update_project,
        }.get(plan_type)
        if handler is None:
            raise ValidationError("Unsupported command type.", {"type": plan.get("type")})

        logger.info(f"Executing {plan_type} on project {project.id}")
        message = handler(project, plan)
        return {"message": message}

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    def _selected_task(self, project: Project, plan: Dict[str, Any]) -> Task:
        selector = plan.get("selector") or {}
        try:
            task_id = int(str(selector.get("id") or 0).lstrip("#"))
        except ValueError:
            task_id = 0
        if task_id <= 0:
            raise ValidationError("A valid task ID is required.")

        task = crud.get_project_task(self.db, project.id, task_id)
        if task is None:
            raise NotFoundError(f"Task #{task_id} not found in this project.", {"task_id": task_id})
        return task

    def _create_task(self, project: Project, plan: Dict[str, Any]) -> str:
        payload = plan.get("payload") or {}
        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValidationError("Task title is required.")

        status = payload.get("status") if payload.get("status") in STATUSES else DEFAULT_STATUS
        priority = payload.get("priority") if payload.get("priority") in PRIORITIES else DEFAULT_PRIORITY

        assignee_id = None
        if payload.get("assignee_hint"):
            assignee_id = self._require_assignee(project, payload["assignee_hint"])

        task = crud.create_task(
            self.db,
            project_id=project.id,
            title=title,
            description=payload.get("description") or "",
            status=status,
            priority=priority,
            start_date=_to_datetime(payload.get("start_date"), "start_date"),
            end_date=_to_datetime(payload.get("end_date"), "end_date"),
            creator_id=self.access.current_user_id(project),
            assignee_id=assignee_id,
        )
        logger.info(f"Created task #{task.id} in project {project.id}")
        return f'✅ Task "{task.title}" created successfully.'

    def _task_update(self, project: Project, plan: Dict[str, Any]) -> str:
        task = self._selected_task(project, plan)
        changes = self.apply_updates(project, task, plan.get("changes") or {})
        if changes:
            crud.update_task(self.db, task, changes)
        return f"✏️ Task #{task.id} updated successfully."

    def _task_delete(self, project: Project, plan: Dict[str, Any]) -> str:
        task = self._selected_task(project, plan)
        task_id, title = task.id, task.title
        crud.delete_task(self.db, task)
        return f'🗑️ Task #{task_id} "{title}" deleted successfully.'

    # ------------------------------------------------------------------
    # Field updates
    # ------------------------------------------------------------------

    def _require_assignee(self, project: Project, hint) -> int:
        assignee_id = self.resolver.resolve_assignee_id(project, hint)
        if assignee_id is None:
            raise ValidationError(f"Assignee '{hint}' could not be determined.", {"assignee": hint})
        return assignee_id

    def apply_updates(self, project: Project, task: Task, updates: Dict[str, Any]) -> Dict[str, Any]:
        """
        Column changes that the updates would make to the task.

        Only values that differ from the current ones are returned, so an
        empty result means the task is left as it is.
        """
        changes: Dict[str, Any] = {}

        status = updates.get("status")
        if status in STATUSES and status != task.status:
            changes["status"] = status

        if updates.get("priority"):
            priority = self.resolver.resolve_priority_token(updates["priority"])
            if priority and priority != task.priority:
                changes["priority"] = priority

        if updates.get("assignee_hint"):
            assignee_id = self._require_assignee(project, updates["assignee_hint"])
            if assignee_id != task.assignee_id:
                changes["assignee_id"] = assignee_id

        for field in ("end_date", "start_date"):
            if updates.get(field):
                value = _to_datetime(updates[field], field)
                if value != getattr(task, field):
                    changes[field] = value

        if "description" in updates and updates["description"] is not None:
            text = str(updates["description"])
            if updates.get("_mode") == "append_desc" and task.description:
                text = f"{task.description}\n\n{text}"
            if text != (task.description or ""):
                changes["description"] = text

        title = str(updates.get("title") or "").strip()
        if title and title != task.title:
            changes["title"] = title

        return changes

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def _matching(self, project: Project, plan: Dict[str, Any]) -> List[Task]:
        filters = plan.get("filters") or {}
        if not filters:
            raise ValidationError("Filters are required for bulk operations.")
        return self.queries.build_query(project, filters).all()

    def _bulk_update(self, project: Project, plan: Dict[str, Any]) -> str:
        updates = plan.get("updates") or plan.get("changes") or {}
        if not updates:
            raise ValidationError("No updates were specified.")

        tasks = self._matching(project, plan)
        if str(updates.get("title") or "").strip() and len(tasks) != 1:
            raise ValidationError(
                "Renaming requires exactly one matching task.", {"matched": len(tasks)}
            )

        updated = 0
        for task in tasks:
            changes = self.apply_updates(project, task, updates)
            if changes:
                crud.update_task(self.db, task, changes)
                updated += 1

        logger.info(f"Bulk update touched {updated} of {len(tasks)} tasks in project {project.id}")
        return f"⚡ Updated {updated} task(s) successfully." if updated else "No changes applied."

    def _bulk_assign(self, project: Project, plan: Dict[str, Any]) -> str:
        hint = plan.get("assignee") or plan.get("assignee_hint")
        if not hint:
            raise ValidationError("An assignee is required.")
        assignee_id = self._require_assignee(project, hint)

        updated = 0
        for task in self._matching(project, plan):
            if task.assignee_id != assignee_id:
                crud.update_task(self.db, task, {"assignee_id": assignee_id})
                updated += 1

        name = self.resolver.user_name(assignee_id) or hint
        return f"👤 Assigned {updated} task(s) to {name}."

    def _bulk_delete(self, project: Project, plan: Dict[str, Any]) -> str:
        deleted = 0
        for task in self._matching(project, plan):
            crud.delete_task(self.db, task)
            deleted += 1
        return f"🗑️ Deleted {deleted} task(s)."

    def _bulk_delete_overdue(self, project: Project, plan: Dict[str, Any]) -> str:
        now = datetime.now()
        candidates = (
            self.db.query(Task)
            .filter(
                Task.project_id == project.id,
                Task.status.in_(OPEN_STATUSES),
                Task.end_date.isnot(None),
            )
            .all()
        )

        deleted = 0
        for task in candidates:
            try:
                due = parse_date(task.end_date)
                if due is None or not due < now:
                    continue
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping task #{task.id} with unreadable end date: {e}")
                continue
            crud.delete_task(self.db, task)
            deleted += 1
        return f"🗑️ Deleted {deleted} overdue task(s)."

    def _bulk_delete_all(self, project: Project, plan: Dict[str, Any]) -> str:
        deleted = 0
        for task in crud.get_tasks_by_project(self.db, project.id):
            crud.delete_task(self.db, task)
            deleted += 1
        logger.warning(f"Deleted all {deleted} tasks in project {project.id}")
        return f"⚠️ Deleted ALL {deleted} task(s) in this project."

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------

    def _update_project(self, project: Project, plan: Dict[str, Any]) -> str:
        if not self.access.is_project_creator(project):
            raise AuthorizationError("Only the project creator can update project details.")

        changes = plan.get("changes") or plan.get("updates") or {}
        fields: Dict[str, Any] = {}
        for field in PROJECT_FIELDS:
            if field not in changes:
                continue
            if field in ("start_date", "end_date"):
                fields[field] = _to_datetime(changes[field], field)
            else:
                value = str(changes[field] or "").strip()
                if field == "name" and not value:
                    continue
                fields[field] = value

        if not fields:
            raise ValidationError("No valid project fields to update.")

        crud.update_project(self.db, project.id, **fields)
        labels = ", ".join(field.replace("_", " ").capitalize() for field in fields)
        return f"✅ Project updated: {labels}"
