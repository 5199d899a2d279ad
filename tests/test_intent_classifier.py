"""
Unit tests for intent classification
"""

import pytest
from unittest.mock import MagicMock

from src.conversation.intent_classifier import (
    COMMAND,
    QUESTION,
    IntentClassifier,
    classify_locally,
    enhance_follow_up_question,
    is_follow_up,
    recent_context,
)
from src.utils.errors import UpstreamError


@pytest.fixture
def llm_client():
    """Create a mock completion client."""
    return MagicMock()


class TestLocalClassifier:
    """Tests for the pattern classifier."""

    @pytest.mark.parametrize("message", [
        "Show me task #42",
        "How many tasks are done?",
        "Who is the project owner?",
        "list overdue tasks",
        "project overview",
    ])
    def test_questions(self, message):
        """Test interrogatives without a strong action verb are questions."""
        assert classify_locally(message) == QUESTION

    @pytest.mark.parametrize("message", [
        "Delete task #42",
        "Create task Write release notes",
        "move #3 to done",
        "assign #4 to Bob",
        "Can you delete all overdue tasks?",
        "set priority of #2 to high",
    ])
    def test_commands(self, message):
        """Test action verbs make commands, even in question form."""
        assert classify_locally(message) == COMMAND

    def test_follow_up_detection(self):
        """Test follow-up phrasing."""
        assert is_follow_up("and their ids?")
        assert is_follow_up("assigned to who?")
        assert not is_follow_up("please move task #12 to the review column")


class TestFollowUpEnhancement:
    """Tests for rewriting terse follow-ups."""

    def test_assignment_follow_up(self):
        """Test "assigned to who?" after a task question."""
        history = [
            {"role": "user", "content": "show all tasks"},
            {"role": "assistant", "content": "Found 5 tasks"},
        ]
        assert enhance_follow_up_question("assigned to who?", history) == "Who are the tasks assigned to?"

    def test_status_follow_up_about_task(self):
        """Test status follow-ups refer to the task under discussion."""
        history = [{"role": "user", "content": "tell me about #7"}]
        assert enhance_follow_up_question("status?", history) == "What is the status of task #7?"

    def test_unrelated_message_unchanged(self):
        """Test messages without a follow-up cue are returned as-is."""
        assert enhance_follow_up_question("hello there", []) == "hello there"

    def test_recent_context(self):
        """Test the recent-context hint."""
        assert recent_context([{"role": "user", "content": "show 3 tasks"}]) == "3 tasks"
        assert recent_context([{"role": "user", "content": "what about #9"}]) == "task #9"
        assert recent_context([]) is None


class TestIntentClassifier:
    """Tests for routing with and without a completion backend."""

    def test_local_only(self):
        """Test classification without a backend."""
        classifier = IntentClassifier(client=None)
        result = classifier.classify("Delete task #42")
        assert result.kind == COMMAND
        assert result.source == "local"
        assert result.plan is None

    def test_local_question_defaults_to_message(self):
        """Test local questions carry the message as the question."""
        result = IntentClassifier(client=None).classify("Show me task #42")
        assert result.is_question
        assert result.question == "Show me task #42"

    def test_local_follow_up_is_enhanced(self):
        """Test follow-ups are rewritten when history exists."""
        history = [{"role": "user", "content": "list all tasks"}]
        result = IntentClassifier(client=None).classify("assigned to who?", history)
        assert result.question == "Who are the tasks assigned to?"

    def test_llm_route_used(self, llm_client):
        """Test a valid backend route is used as-is."""
        llm_client.complete.return_value = {
            "kind": "command",
            "plan": {"type": "task_update", "selector": {"id": 3}, "changes": {"status": "done"}},
        }
        classifier = IntentClassifier(client=llm_client)

        result = classifier.classify("finish off 3", [], {"tasks": {"total": 5}})

        assert result.kind == COMMAND
        assert result.source == "llm"
        assert result.plan["selector"] == {"id": 3}
        messages = llm_client.complete.call_args[0][0]
        assert messages[0]["role"] == "system"
        assert "CURRENT PROJECT STATE" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "finish off 3"}
        assert llm_client.complete.call_args[1] == {"temperature": 0.1, "json_mode": True}

    def test_llm_rephrased_question(self, llm_client):
        """Test the backend's rephrased question is kept."""
        llm_client.complete.return_value = {"kind": "question", "question": "Who owns the project?"}
        result = IntentClassifier(client=llm_client).classify("owner?")
        assert result.is_question
        assert result.question == "Who owns the project?"

    def test_history_window(self, llm_client):
        """Test only the trailing history turns are sent."""
        llm_client.complete.return_value = {"kind": "question"}
        history = [{"role": "user", "content": f"message {i}"} for i in range(30)]
        IntentClassifier(client=llm_client, history_window=15).classify("hi", history)

        messages = llm_client.complete.call_args[0][0]
        contents = [m["content"] for m in messages]
        assert "message 14" not in contents
        assert "message 15" in contents and "message 29" in contents

    def test_llm_error_falls_back(self, llm_client):
        """Test an upstream error falls back to the pattern classifier."""
        llm_client.complete.side_effect = UpstreamError("timeout")
        result = IntentClassifier(client=llm_client).classify("Delete task #42")
        assert result.kind == COMMAND
        assert result.source == "local"

    def test_invalid_kind_falls_back(self, llm_client):
        """Test a route without a valid kind counts as an error."""
        llm_client.complete.return_value = {"kind": "banana"}
        classifier = IntentClassifier(client=llm_client)

        route = classifier.route_with_llm("Show me task #42")
        assert not route.ok
        assert isinstance(route.error, UpstreamError)

        result = classifier.classify("Show me task #42")
        assert result.kind == QUESTION
        assert result.source == "local"
