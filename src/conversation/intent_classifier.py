"""
Intent classification for assistant messages.

A message is either a "question" (information request) or a "command"
(state change). With a completion backend configured the classifier asks
it first; the deterministic pattern classifier runs only when that route
reports an error.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.llms.llm import CompletionClient
from src.utils.errors import UpstreamError

logger = logging.getLogger(__name__)

QUESTION = "question"
COMMAND = "command"

ACTION_PATTERNS = {
    "create": [re.compile(r"\b(?:create|add|new|make)\s+(?:a\s+)?(?:new\s+)?task\b", re.I)],
    "update": [
        re.compile(r"\b(?:update|change|modify|edit|set|mark)\b", re.I),
        re.compile(r"\b(?:move|transfer|shift)\s+(?:task|#?\d+)\b", re.I),
    ],
    "delete": [
        re.compile(r"\b(?:delete|remove|destroy|purge|clear|erase|drop)\b", re.I),
    ],
    "assign": [re.compile(r"\b(?:assign|delegate|give|allocate)\s+(?:task|#?\d+)?\s*(?:to)?\b", re.I)],
}

QUESTION_PATTERNS = [
    re.compile(r"^(?:what|which|who|where|when|how|why|is|are|do|does|can)\b", re.I),
    re.compile(r"\?$"),
    re.compile(r"\b(?:show|list|display|get|find|tell)\s+(?:me\s+)?", re.I),
    re.compile(r"\b(?:how\s+many|count|total|number\s+of)\b", re.I),
    re.compile(r"\b(?:status|state|progress|info|details?)\s+(?:of|about|for)?\b", re.I),
]

STRONG_ACTION_RE = re.compile(r"\b(create|add|delete|remove|update|change|move|assign|set|mark|make)\b", re.I)

FOLLOW_UP_PATTERNS = [
    re.compile(r"^(and|also|what about|how about)", re.I),
    re.compile(r"^(assigned|belong|owned|created) (to|by)", re.I),
    re.compile(r"^(who|whom|whose|their|they|them|it|its|that|those)", re.I),
    re.compile(r"^(status|priority|due|deadline)", re.I),
]

LIKELY_QUESTION_RE = re.compile(
    r"\b(how many|what is|who is|members|overview|summary|report|assigned to|belong|their|they)\b", re.I
)

ROUTING_PROMPT = """You are a routing and parsing controller for a project management assistant.

CONTEXT AWARENESS:
- Consider the conversation history when classifying the last message
- Follow-up questions like "assigned to who?", "what's their ids?" or "their status?" refer to previously mentioned items
- Short phrases often relate to the previous topic discussed

CLASSIFICATION RULES:
Classify the user's last message as either:
- "question": the user is asking for information (including follow-ups)
- "command": the user wants to change state (create, update, delete, assign tasks, update the project)

FOLLOW-UP PATTERNS:
- Any question with pronouns (they, them, their, those, these) refers to previous context
- "their ids" -> "What are the IDs of the tasks?"
- "assigned to who?" -> "Who are the tasks assigned to?"
- "their status?" -> "What is the status of the tasks?"

RESPONSE FORMAT:
Return a single JSON object with ONLY these keys:
{
  "kind": "question" | "command",
  "question": "<complete, unambiguous rephrased question>",
  "plan": {"type": "...", "selector": {}, "payload": {}, "changes": {}, "filters": {}, "updates": {}, "assignee": "..."}
}

COMMAND PARSING:
- plan.type is one of: create_task, task_update, task_delete, bulk_update, bulk_assign, bulk_delete, bulk_delete_overdue, bulk_delete_all, update_project
- Status must be: todo, inprogress, review, done
- Priority must be: low, medium, high, urgent
- Map stages: first->todo, second->inprogress, third->review, fourth->done
- If a person is mentioned ("Alice's tasks"), set filters.assigned_to_hint"""


@dataclass
class Classification:
    kind: str
    question: Optional[str] = None
    plan: Optional[Dict[str, Any]] = None
    source: str = "local"

    @property
    def is_question(self) -> bool:
        return self.kind == QUESTION

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"kind": self.kind}
        if self.question:
            result["question"] = self.question
        if self.plan:
            result["plan"] = self.plan
        return result


@dataclass
class RouteResult:
    """Outcome of the completion route: a classification or the error that prevented one."""
    classification: Optional[Classification] = None
    error: Optional[UpstreamError] = None

    @property
    def ok(self) -> bool:
        return self.classification is not None and self.error is None


def _turns(history: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [h for h in (history or []) if isinstance(h, dict)]


def has_strong_action_verb(message: str) -> bool:
    return bool(STRONG_ACTION_RE.search(message))


def is_follow_up(message: str) -> bool:
    text = message.strip().lower()
    if any(p.search(text) for p in FOLLOW_UP_PATTERNS):
        return True
    return len(text) < 25 and "#" not in text


def classify_locally(message: str) -> str:
    """Deterministic question/command decision."""
    text = message.strip().lower()

    if any(p.search(text) for p in QUESTION_PATTERNS) and not has_strong_action_verb(text):
        return QUESTION

    for patterns in ACTION_PATTERNS.values():
        if any(p.search(text) for p in patterns):
            return COMMAND

    if is_follow_up(message):
        return QUESTION

    return QUESTION if LIKELY_QUESTION_RE.search(text) else COMMAND


def recent_context(history: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    """Describe what the user was just discussing, from the last 4 turns."""
    for turn in reversed(_turns(history)[-4:]):
        if turn.get("role") != "user":
            continue
        content = str(turn.get("content") or "")
        lowered = content.lower()
        if "tasks" in lowered:
            match = re.search(r"(\d+)\s+tasks?", content, re.I)
            return f"{match.group(1)} tasks" if match else "tasks in the project"
        match = re.search(r"#(\d+)", content)
        if match:
            return f"task #{match.group(1)}"
        if "project" in lowered:
            return "the project"
    return None


def enhance_follow_up_question(message: str, history: Optional[List[Dict[str, Any]]]) -> str:
    """Turn a terse follow-up into a complete question using recent turns."""
    text = message.strip().lower()

    context = ""
    for turn in _turns(history)[-4:]:
        if turn.get("role") != "user":
            continue
        content = str(turn.get("content") or "")
        if re.search(r"\btasks?\b", content, re.I):
            context = "tasks"
            break
        match = re.search(r"#(\d+)", content)
        if match:
            context = f"task #{match.group(1)}"
            break

    if "assigned" in text or "who" in text:
        return f"Who are the {context} assigned to?" if context else "Who are the tasks assigned to?"
    if "status" in text:
        return f"What is the status of {context}?" if context else "What is the status of the tasks?"
    if "their" in text or "they" in text:
        return f"Tell me about {context}" if context else message
    return message


class IntentClassifier:
    """Classifies a message as a question or a command"""

    def __init__(self, client: Optional[CompletionClient] = None, history_window: int = 15):
        """
        Args:
            client: Completion backend, None to classify with patterns only
            history_window: Number of trailing turns sent to the backend
        """
        self.client = client
        self.history_window = history_window

    def classify(
        self,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        project_context: Optional[Dict[str, Any]] = None,
    ) -> Classification:
        classification = None
        if self.client is not None:
            route = self.route_with_llm(message, history, project_context)
            if route.ok:
                classification = route.classification
            else:
                logger.warning(f"LLM routing failed, using pattern classifier: {route.error.message}")

        if classification is None:
            classification = Classification(kind=classify_locally(message), source="local")

        if classification.is_question and not classification.question:
            if _turns(history) and is_follow_up(message):
                classification.question = enhance_follow_up_question(message, history)
            else:
                classification.question = message

        logger.info(
            f"Classified message as {classification.kind} ({classification.source})"
            + (f": {classification.question}" if classification.question and classification.question != message else "")
        )
        return classification

    def route_with_llm(
        self,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        project_context: Optional[Dict[str, Any]] = None,
    ) -> RouteResult:
        """Ask the completion backend to route the message."""
        system = ROUTING_PROMPT
        if project_context:
            system += "\n\nCURRENT PROJECT STATE:\n" + json.dumps(project_context, indent=2, default=str)

        messages = [{"role": "system", "content": system}]
        for turn in _turns(history)[-self.history_window:]:
            role = "assistant" if turn.get("role") == "assistant" else "user"
            if turn.get("content"):
                messages.append({"role": role, "content": str(turn["content"])})

        context = recent_context(history)
        if context:
            messages.append({"role": "system", "content": f"Recent context: User was just discussing {context}"})
        messages.append({"role": "user", "content": message})

        try:
            result = self.client.complete(messages, temperature=0.1, json_mode=True)
        except UpstreamError as e:
            return RouteResult(error=e)

        kind = str(result.get("kind") or "").strip().lower()
        if kind not in (QUESTION, COMMAND):
            return RouteResult(error=UpstreamError("Routing result has no valid kind", {"result": result}))

        plan = result.get("plan")
        question = result.get("question")
        return RouteResult(classification=Classification(
            kind=kind,
            question=str(question).strip() if kind == QUESTION and question else None,
            plan=plan if isinstance(plan, dict) and plan else None,
            source="llm",
        ))
