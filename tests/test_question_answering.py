"""
Unit tests for question answering
"""

import pytest
from unittest.mock import MagicMock

from database import crud
from src.conversation.question_answering import (
    MAX_ANSWER_CHARS,
    QuestionAnsweringService,
    provide_suggestions,
    requires_conversation_context,
    sanitize_answer,
)
from src.utils.errors import UpstreamError


@pytest.fixture
def qa(resolver, queries):
    """Question answering without a completion backend."""
    return QuestionAnsweringService(resolver, queries)


class TestHelpers:
    """Tests for module-level helpers."""

    def test_requires_conversation_context(self):
        """Test pronouns, short follow-ups and leading conjunctions."""
        assert requires_conversation_context("what are their ids?", [])
        assert requires_conversation_context("and the high ones", [])
        assert requires_conversation_context("status?", [{"role": "user", "content": "show #1"}])
        assert not requires_conversation_context("show task #5", None)
        assert not requires_conversation_context("Who is the project owner?", [])

    def test_sanitize_answer(self):
        """Test code fences are removed and long answers truncated."""
        assert sanitize_answer("Here\n```json\n{}\n```\nDone") == "Here\n\nDone"
        long_answer = sanitize_answer("x" * (MAX_ANSWER_CHARS + 50))
        assert len(long_answer) == MAX_ANSWER_CHARS + 1
        assert long_answer.endswith("…")

    def test_suggestions_follow_the_verb(self):
        """Test suggestions match the kind of command attempted."""
        assert "Delete all overdue tasks" in provide_suggestions("delete stuff")
        assert "Assign all unassigned tasks to me" in provide_suggestions("assign it somewhere")
        assert provide_suggestions("gibberish").startswith("I couldn't understand that. Try commands like:")


class TestDeterministicAnswers:
    """Tests for answers computed from the task store."""

    def test_task_detail(self, qa, seed):
        """Test task details include overdue marker and description."""
        answer = qa.answer(seed.project, "Show me task #1")
        lines = answer.split("\n")
        assert lines[0] == "**Task #1**: Fix login bug"
        assert "• Status: todo" in lines
        assert "• Assigned to: Alice Smith" in lines
        assert any(line.startswith("• Due:") and line.endswith("(OVERDUE)") for line in lines)
        assert lines[-1] == "• Description: Users can't sign in"

    def test_task_detail_not_found(self, qa, seed):
        """Test unknown ids."""
        assert qa.answer(seed.project, "what is #99?") == "Task #99 not found in this project."

    def test_owner(self, qa, seed):
        """Test owner questions."""
        assert qa.answer(seed.project, "Who is the project owner?") == "Project owner: Olivia Owner (olivia@example.com)"

    def test_members(self, qa, seed):
        """Test member listing and counting."""
        assert qa.answer(seed.project, "Who are the team members?") == \
            "Team members: Olivia Owner, Alice Smith, Bob Jones"
        assert qa.answer(seed.project, "How many members are there?") == "There are 3 project members."

    @pytest.mark.parametrize("question,expected", [
        ("How many tasks are done?", "There are 1 task(s) in done."),
        ("How many high priority tasks?", "There are 1 high priority task(s)."),
        ("How many overdue tasks are there?", "There are 2 overdue task(s)."),
        ("How many tasks do we have?", "There are a total of 5 tasks in the project."),
    ])
    def test_counts(self, qa, seed, question, expected):
        """Test count questions."""
        assert qa.answer(seed.project, question) == expected

    def test_count_uses_methodology_label(self, seed, resolver, queries):
        """Test status counts are phrased with the methodology's labels."""
        crud.update_project(seed.db, seed.project.id, methodology="waterfall")
        qa = QuestionAnsweringService(resolver, queries)
        assert qa.answer(seed.project, "How many tasks are in verification?") == "There are 1 task(s) in verification."

    def test_overview(self, qa, seed):
        """Test the project overview."""
        answer = qa.answer(seed.project, "project overview")
        assert answer.startswith("📊 **Project Overview**")
        assert "Total Tasks: 5" in answer
        assert "• todo: 2" in answer
        assert "• Urgent: 1" in answer
        assert "⚠️ Overdue Tasks: 2" in answer

    def test_all_tasks(self, qa, seed):
        """Test listing every task."""
        answer = qa.answer(seed.project, "show all tasks")
        assert answer.startswith("Found 5 tasks:")
        assert "• **Task #1**: Fix login bug (todo, high priority, assigned to Alice Smith, **OVERDUE**)" in answer
        assert "• **Task #5**: Setup CI (todo, medium priority, unassigned)" in answer

    def test_overdue_listing(self, qa, seed):
        """Test simple filters in a listing question."""
        answer = qa.answer(seed.project, "list overdue tasks")
        assert answer.startswith("Found 2 tasks:")
        assert "#1" in answer and "#2" in answer and "#3" not in answer

    def test_assignee_listing(self, qa, seed):
        """Test a targeted lookup by assignee."""
        answer = qa.answer(seed.project, "tasks assigned to Alice")
        assert answer.startswith("Found 2 tasks:")
        assert "Release notes" in answer and "Fix login bug" in answer

    def test_quoted_keyword_without_match(self, qa, seed):
        """Test a quoted search with no match."""
        assert qa.answer(seed.project, 'find tasks named "kubernetes"') == "No tasks found matching your criteria."

    def test_long_list_is_summarized(self, qa, seed):
        """Test lists longer than ten become ids plus a status breakdown."""
        for i in range(8):
            crud.create_task(seed.db, seed.project.id, f"Chore {i}", creator_id=seed.owner.id)

        answer = qa.answer(seed.project, "show all tasks")

        assert answer.startswith("Found 13 tasks. Task IDs: #1, #2, #3")
        assert "Status breakdown:" in answer
        assert "• todo: 10" in answer

    def test_assignments_follow_up(self, qa, seed):
        """Test "assigned to who?" after a task listing."""
        history = [{"role": "assistant", "content": "Found 5 tasks:"}]
        answer = qa.answer(seed.project, "assigned to who?", history)
        assert answer.startswith("Task assignments:")
        assert "• **Task #4** (Design review): Unassigned" in answer

    def test_weekly_report(self, qa, seed):
        """Test the weekly progress report."""
        answer = qa.answer(seed.project, "weekly progress report")
        assert answer.startswith("📅 **Weekly Progress**")
        assert "• Created this week: 5" in answer
        assert "• Overdue: 2" in answer
        assert "Overall: 1/5 tasks done (20%)." in answer

    def test_unanswerable_gets_help(self, qa, seed):
        """Test questions with no deterministic answer get help text."""
        assert qa.answer(seed.project, "what is the meaning of life").startswith("I can help you")


class TestSnapshot:
    """Tests for the project snapshot."""

    def test_snapshot(self, qa, seed):
        """Test counts by status and priority."""
        snapshot = qa.snapshot(seed.project)
        assert snapshot["project"]["name"] == "Apollo"
        assert snapshot["project"]["owner"]["name"] == "Olivia Owner"
        assert snapshot["tasks"] == {
            "total": 5,
            "by_status": {"todo": 2, "inprogress": 1, "review": 1, "done": 1},
            "by_priority": {"low": 1, "medium": 2, "high": 1, "urgent": 1},
            "overdue": 2,
        }
        assert snapshot["members"] == 3


class TestCompletionBackend:
    """Tests for answers from the completion backend."""

    def test_context_question_uses_backend(self, resolver, queries, seed):
        """Test follow-ups are answered by the backend with project data."""
        client = MagicMock()
        client.complete.return_value = {"content": "Task #1 and Task #2"}
        qa = QuestionAnsweringService(resolver, queries, client)
        history = [{"role": "assistant", "content": "Found 2 tasks:"}]

        answer = qa.answer(seed.project, "what are their ids?", history)

        assert answer == "Task #1 and Task #2"
        messages = client.complete.call_args[0][0]
        assert messages[1]["content"].startswith("PROJECT_DATA:")
        assert messages[-1]["content"].startswith("[Follow-up question referring to previous context]")
        assert client.complete.call_args[1] == {"temperature": 0.2, "json_mode": False}

    def test_backend_failure_falls_back(self, resolver, queries, seed):
        """Test backend errors fall back to deterministic answers."""
        client = MagicMock()
        client.complete.side_effect = UpstreamError("timeout")
        qa = QuestionAnsweringService(resolver, queries, client)

        answer = qa.answer(seed.project, "and who is the owner?")

        assert answer == "Project owner: Olivia Owner (olivia@example.com)"

    def test_deterministic_answer_skips_backend(self, resolver, queries, seed):
        """Test self-contained questions never call the backend when answerable."""
        client = MagicMock()
        qa = QuestionAnsweringService(resolver, queries, client)

        assert qa.answer(seed.project, "project overview").startswith("📊")
        client.complete.assert_not_called()
