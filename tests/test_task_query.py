"""
Unit tests for the task query builder
"""

from datetime import datetime, timedelta

from database import crud
from src.conversation.dates import start_of_week
from src.conversation.task_query import (
    TaskFilters,
    extract_keywords,
    parse_ordinal_window,
    task_summary,
)


def _ids(tasks):
    return [task.id for task in tasks]


class TestParsing:
    """Tests for filter extraction from text."""

    def test_ordinal_window(self):
        """Test first/last/top windows with words and digits."""
        assert parse_ordinal_window("move the first two tasks") == {
            "limit": 2, "order_by": "created_at", "order": "asc"
        }
        assert parse_ordinal_window("show last 3 tasks")["order"] == "desc"
        assert parse_ordinal_window("top five")["limit"] == 5
        assert parse_ordinal_window("show all tasks") is None

    def test_keywords(self):
        """Test quoted phrases are kept and short words or stopwords dropped."""
        keywords = extract_keywords('find tasks with "login bug" about auth')
        assert keywords[0] == "login bug"
        assert "about" in keywords and "bug" not in keywords
        assert "find" not in keywords and "with" not in keywords

    def test_created_by_is_not_an_assignee(self, queries, seed):
        """Test "created by" fills the creator hint only."""
        filters = queries.parse_lookup_filters(seed.project, "tasks created by Olivia")
        assert filters.creator_hint == "Olivia"
        assert filters.assignee_hint is None

    def test_window_phrase_is_not_a_task_id(self, queries, seed):
        """Test "first 2" is read as a window, not as task #2."""
        filters = queries.parse_lookup_filters(seed.project, "show the first 2 tasks")
        assert filters.task_id is None
        assert filters.limit == 2

    def test_periods(self, queries, seed):
        """Test created and due periods."""
        assert queries.parse_lookup_filters(seed.project, "tasks created this week").created_period == "this week"
        assert queries.parse_lookup_filters(seed.project, "tasks due next week").due_period == "next week"


class TestFindTasks:
    """Tests for ordered lookup strategies."""

    def test_by_id(self, queries, seed):
        """Test an explicit id wins."""
        assert _ids(queries.find_tasks(seed.project, "what is task #2?")) == [seed.tasks[1].id]

    def test_by_assignee_newest_first(self, queries, seed):
        """Test assignee lookups return newest tasks first."""
        tasks = queries.find_tasks(seed.project, "tasks assigned to Alice")
        assert _ids(tasks) == [seed.tasks[2].id, seed.tasks[0].id]

    def test_by_creator(self, queries, seed):
        """Test creator lookups."""
        tasks = queries.find_tasks(seed.project, "tasks created by Bob")
        assert _ids(tasks) == [seed.tasks[3].id]

    def test_by_milestone(self, queries, seed):
        """Test milestone lookups match by partial name."""
        tasks = queries.find_tasks(seed.project, "tasks in milestone beta")
        assert _ids(tasks) == [seed.tasks[3].id]

    def test_status_and_assignee_without_match_is_empty(self, queries, seed):
        """Test a status plus assignee filter with no match returns an empty list."""
        result = queries.find_tasks(seed.project, TaskFilters(status="done", assignee_hint="Bob"))
        assert result == []

    def test_status_and_assignee(self, queries, seed):
        """Test status plus assignee narrows the assignee's tasks."""
        result = queries.find_tasks(seed.project, TaskFilters(status="done", assignee_hint="Alice"))
        assert _ids(result) == [seed.tasks[2].id]

    def test_keywords(self, queries, seed):
        """Test keyword lookups search title and description."""
        assert _ids(queries.find_tasks(seed.project, 'find "login"')) == [seed.tasks[0].id]

    def test_window_over_all_tasks(self, queries, seed):
        """Test a bare window applies to all tasks in creation order."""
        tasks = queries.find_tasks(seed.project, "the first two")
        assert _ids(tasks) == [seed.tasks[0].id, seed.tasks[1].id]

    def test_created_today(self, queries, seed):
        """Test created-period lookups."""
        assert len(queries.find_tasks(seed.project, "tasks created today")) == 5

    def test_due_period_ascending_by_due_date(self, queries, seed):
        """Test due-in-period lookups list the earliest due date first, not the newest task."""
        next_monday = start_of_week(datetime.now() + timedelta(weeks=1))
        late = crud.create_task(seed.db, seed.project.id, "Ship beta", creator_id=seed.owner.id,
                                end_date=next_monday + timedelta(days=5, hours=12))
        early = crud.create_task(seed.db, seed.project.id, "Freeze scope", creator_id=seed.owner.id,
                                 end_date=next_monday + timedelta(hours=12))

        tasks = queries.find_tasks(seed.project, "tasks due next week")

        assert set(_ids(tasks)) == {early.id, late.id, seed.tasks[3].id}
        assert _ids(tasks)[0] == early.id
        assert _ids(tasks)[-1] == late.id
        assert [task.end_date for task in tasks] == sorted(task.end_date for task in tasks)

    def test_no_match(self, queries, seed):
        """Test an unmatched lookup returns an empty list."""
        assert queries.find_tasks(seed.project, 'find "kubernetes"') == []


class TestBuildQuery:
    """Tests for conjunctive command filters."""

    def test_overdue(self, queries, seed):
        """Test overdue means open status with a past end date."""
        tasks = queries.build_query(seed.project, {"overdue": True}).all()
        assert _ids(tasks) == [seed.tasks[0].id, seed.tasks[1].id]
        assert queries.count_overdue(seed.project) == 2

    def test_unassigned_and_priority(self, queries, seed):
        """Test filters combine with AND."""
        assert _ids(queries.build_query(seed.project, {"unassigned": True}).all()) == [
            seed.tasks[3].id, seed.tasks[4].id
        ]
        assert _ids(queries.build_query(seed.project, {"unassigned": True, "priority": "medium"}).all()) == [
            seed.tasks[4].id
        ]

    def test_assigned_to_hint(self, queries, seed):
        """Test assignee hints, including unresolvable ones matching nothing."""
        assert queries.count_affected(seed.project, {"assigned_to_hint": "Alice"}) == 2
        assert queries.count_affected(seed.project, {"assigned_to_hint": "nobody"}) == 0

    def test_ordering_and_limit(self, queries, seed):
        """Test order_by, order and limit."""
        tasks = queries.build_query(seed.project, {"order": "desc", "limit": 2}).all()
        assert _ids(tasks) == [seed.tasks[4].id, seed.tasks[3].id]
        assert queries.count_affected(seed.project, {"all": True, "limit": 3}) == 3

    def test_ids(self, queries, seed):
        """Test id lists."""
        wanted = [seed.tasks[1].id, seed.tasks[4].id]
        assert _ids(queries.build_query(seed.project, {"ids": wanted}).all()) == wanted


class TestTaskSummary:
    """Tests for task serialization."""

    def test_summary_uses_methodology_label(self, seed):
        """Test summaries carry the methodology label and assignee name."""
        summary = task_summary(seed.tasks[1], "waterfall")
        assert summary["status"] == "inprogress"
        assert summary["status_label"] == "design"
        assert summary["assignee"] == "Bob Jones"
