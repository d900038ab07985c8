"""Tests for continuum/orchestrator/assignment.py: affinity scoring and WIP caps."""

from continuum.core.models import Task, TaskStatus
from continuum.orchestrator.assignment import count_wip, extract_task_keywords


def _doing(agent, n=1):
    return [Task(title=f"busy {i}", assignee=agent, status=TaskStatus.DOING) for i in range(n)]


class TestKeywords:
    def test_extract_drops_short_words(self):
        task = Task(title="Fix CI in api/server", tags=["backend"], done_criteria=["tests pass"])
        keywords = extract_task_keywords(task)
        assert "ci" not in keywords
        assert "in" not in keywords
        assert {"fix", "api", "server", "backend", "tests", "pass"} <= set(keywords)

    def test_count_wip_case_insensitive(self):
        tasks = _doing("Link", 2) + [Task(title="t", assignee="link", status=TaskStatus.TODO)]
        assert count_wip("link", tasks) == 2


class TestScoring:
    def test_affinity_match(self, assignment):
        role = assignment.get_role("link")
        score = assignment.score_assignment(role, Task(title="Fix webhook retries in api server"), 0)
        assert score.affinity == 1.0
        assert score.score == 1.0
        assert score.over_cap is False

    def test_over_cap_penalty(self, assignment):
        role = assignment.get_role("pixel")
        score = assignment.score_assignment(role, Task(title="Dashboard layout"), 1)
        assert score.wip_penalty == -0.5
        assert score.over_cap is True

    def test_throughput_bonus_capped(self, assignment):
        role = assignment.get_role("link")
        score = assignment.score_assignment(role, Task(title="api"), 0, recent_completions=10)
        assert score.throughput == 0.2

    def test_unknown_role(self, assignment):
        assert assignment.get_role("nobody") is None


class TestSuggestAssignee:
    def test_best_affinity_wins(self, assignment):
        suggestion = assignment.suggest_assignee(Task(title="Fix webhook retries in api server"), [])
        assert suggestion.suggested == "link"
        assert suggestion.scores[0].agent == "link"

    def test_protected_domain_routes_to_owner(self, assignment):
        suggestion = assignment.suggest_assignee(Task(title="Deploy hotfix to staging"), [])
        assert suggestion.suggested == "sage"
        assert suggestion.protected_match == 'Protected domain "deploy" -> sage'

    def test_protected_owner_at_cap_leaves_unassigned(self, assignment):
        suggestion = assignment.suggest_assignee(Task(title="Deploy hotfix"), _doing("sage"))
        assert suggestion.suggested is None
        assert suggestion.protected_match is not None

        overridden = assignment.suggest_assignee(Task(title="Deploy hotfix"), _doing("sage"), wip_override="incident")
        assert overridden.suggested == "sage"

    def test_security_routes_to_reviewer(self, assignment):
        assert assignment.suggest_assignee(Task(title="Security review of token storage"), []).suggested == "harmony"

    def test_exclude_and_candidates(self, assignment):
        task = Task(title="Fix webhook retries in api server")
        assert assignment.suggest_assignee(task, [], exclude=["link"]).suggested != "link"
        assert assignment.suggest_assignee(task, [], candidates=["pixel", "echo"]).suggested is None

    def test_over_cap_agent_skipped(self, assignment):
        task = Task(title="Fix webhook retries in api server")
        assert assignment.suggest_assignee(task, _doing("link", 2)).suggested != "link"

    def test_no_affinity(self, assignment):
        suggestion = assignment.suggest_assignee(Task(title="zzz qqq"), [])
        assert suggestion.suggested is None
        assert suggestion.reason == "no agent with capacity and affinity"


class TestSuggestReviewer:
    def test_prefers_reviewer_role(self, assignment):
        assert assignment.suggest_reviewer(Task(title="t", assignee="link"), []) == "harmony"

    def test_never_the_assignee(self, assignment):
        reviewer = assignment.suggest_reviewer(Task(title="t", assignee="harmony"), [])
        assert reviewer == "echo"


class TestWipCap:
    def test_under_cap(self, assignment):
        check = assignment.check_wip_cap("link", _doing("link", 1))
        assert check.allowed is True
        assert check.wip_cap == 2

    def test_at_cap_blocked_unless_override(self, assignment):
        blocked = assignment.check_wip_cap("link", _doing("link", 2))
        assert blocked.allowed is False
        assert "wip_override" in blocked.message

        allowed = assignment.check_wip_cap("link", _doing("link", 2), override="incident")
        assert allowed.allowed is True
        assert "override" in allowed.message

    def test_unknown_agent_unbounded(self, assignment):
        check = assignment.check_wip_cap("ghost", [])
        assert check.allowed is True
        assert check.wip_cap == 999

    def test_intensity_tightens_cap(self, assignment, pacing):
        pacing.set_intensity("low", updated_by="ops")
        assert assignment.check_wip_cap("link", _doing("link", 1)).allowed is False
