# tests/test_dependency_evaluator.py
"""
Test precondition graph walks and the dependency evaluator.

Covers unblocking, transitive skip, pre-approval gating, side-effect
exclusion, unresolvable graphs and fulfillment callbacks.
"""

import pytest

from delivery.errors import FulfillmentCallbackError
from delivery.goals.callbacks import FulfillmentCallbackRegistry
from delivery.goals.evaluator import DependencyEvaluator
from delivery.goals.graph import (
    find_unresolvable,
    goals_on_cycles,
    preconditions_are_met,
    transitive_dependents,
    transitive_preconditions,
)
from delivery.goals.models import FulfillmentMethod, GoalKey, GoalState, GoalUpdate

from conftest import make_goal


@pytest.fixture
def evaluator(store):
    return DependencyEvaluator(store, FulfillmentCallbackRegistry(), registration="goal-delivery")


class TestGraph:
    """Tests for precondition graph helpers."""

    def test_transitive_dependents(self):
        """Dependents are found through intermediate goals."""
        goals = [
            make_goal("build"),
            make_goal("test", pre_conditions=["build"]),
            make_goal("deploy", pre_conditions=["test"]),
            make_goal("lint"),
        ]

        dependents = transitive_dependents(goals[0], goals)

        assert [g.unique_name for g in dependents] == ["test", "deploy"]

    def test_cycles_terminate(self):
        """Cyclic graphs do not loop forever and exclude the root."""
        goals = [
            make_goal("a", pre_conditions=["b"]),
            make_goal("b", pre_conditions=["a"]),
        ]

        assert [g.unique_name for g in transitive_dependents(goals[0], goals)] == ["b"]
        assert [g.unique_name for g in transitive_preconditions(goals[0], goals)] == ["b"]
        assert goals_on_cycles(goals) == {goals[0].key, goals[1].key}

    def test_preconditions_met(self):
        """Success and skipped preconditions count as met."""
        goals = [
            make_goal("build", state=GoalState.SUCCESS),
            make_goal("lint", state=GoalState.SKIPPED),
            make_goal("test", pre_conditions=["build", "lint"]),
        ]

        assert preconditions_are_met(goals[2], goals)

    def test_failure_induced_skip_does_not_count(self):
        """A precondition skipped because of an upstream failure blocks."""
        goals = [
            make_goal("build", state=GoalState.FAILURE),
            make_goal("test", state=GoalState.SKIPPED, pre_conditions=["build"]),
            make_goal("deploy", pre_conditions=["test"]),
        ]

        assert not preconditions_are_met(goals[2], goals)

    def test_unresolvable(self):
        """Missing preconditions and cycles are unresolvable."""
        goals = [
            make_goal("test", pre_conditions=[GoalKey("0-code", "missing")]),
            make_goal("a", pre_conditions=["b"]),
            make_goal("b", pre_conditions=["a"]),
            make_goal("build"),
        ]

        unresolvable = find_unresolvable(goals)

        assert set(unresolvable) == {"test", "a", "b"}
        assert unresolvable["test"] == ["0-code/missing"]


class TestUnblock:
    """Tests for requesting dependents of successful goals."""

    def test_dependent_requested_when_all_preconditions_succeed(self, evaluator):
        """A planned goal is requested once every precondition succeeded."""
        build = make_goal("build", state=GoalState.SUCCESS)
        goals = [build, make_goal("test", pre_conditions=["build"])]

        effects = evaluator.compute_effects(build, goals)

        assert effects.targets() == ["test"]
        assert effects[0].state == GoalState.REQUESTED
        assert effects[0].update.description == "Ready: test"

    def test_dependent_stays_blocked(self, evaluator):
        """Goals with an unfinished precondition are not requested."""
        build = make_goal("build", state=GoalState.SUCCESS)
        goals = [
            build,
            make_goal("lint", state=GoalState.IN_PROCESS),
            make_goal("test", pre_conditions=["build", "lint"]),
        ]

        assert evaluator.compute_effects(build, goals) == []

    def test_only_direct_dependents_are_unblocked(self, evaluator):
        """Goals further down the graph wait for their own preconditions."""
        build = make_goal("build", state=GoalState.SUCCESS)
        goals = [
            build,
            make_goal("test", pre_conditions=["build"]),
            make_goal("deploy", pre_conditions=["test"]),
        ]

        assert evaluator.compute_effects(build, goals).targets() == ["test"]

    def test_pre_approval_required(self, evaluator):
        """Goals requiring pre-approval wait for it instead of being requested."""
        build = make_goal("build", state=GoalState.SUCCESS)
        goals = [build, make_goal("deploy", pre_conditions=["build"], pre_approval_required=True)]

        [effect] = evaluator.compute_effects(build, goals)

        assert effect.state == GoalState.WAITING_FOR_PRE_APPROVAL
        assert effect.update.description == "Start required: deploy"

    def test_own_side_effects_are_not_requested(self, evaluator):
        """Side effects fulfilled under our registration name are left alone."""
        build = make_goal("build", state=GoalState.SUCCESS)
        goals = [
            build,
            make_goal("ours", pre_conditions=["build"], method=FulfillmentMethod.SIDE_EFFECT,
                      fulfillment="goal-delivery"),
            make_goal("theirs", pre_conditions=["build"], method=FulfillmentMethod.SIDE_EFFECT,
                      fulfillment="other-sdm"),
        ]

        assert evaluator.compute_effects(build, goals).targets() == ["theirs"]

    def test_retry_feasible_failure_is_requested_again(self, evaluator):
        """A failed goal that allows retries is requested when unblocked."""
        build = make_goal("build", state=GoalState.SUCCESS)
        goals = [build, make_goal("test", state=GoalState.FAILURE, retry_feasible=True, pre_conditions=["build"])]

        assert evaluator.compute_effects(build, goals).targets() == ["test"]

    def test_in_process_dependent_not_requested(self, evaluator):
        """Goals already running are never requested again."""
        build = make_goal("build", state=GoalState.SUCCESS)
        goals = [build, make_goal("test", state=GoalState.IN_PROCESS, pre_conditions=["build"])]

        assert evaluator.compute_effects(build, goals) == []


class TestSkip:
    """Tests for skipping dependents of failed goals."""

    @pytest.mark.parametrize("state,reason", [
        (GoalState.FAILURE, "failed"),
        (GoalState.STOPPED, "was stopped"),
        (GoalState.CANCELED, "was canceled"),
    ])
    def test_transitive_skip(self, evaluator, state, reason):
        """Every planned transitive dependent is skipped with the trigger named."""
        build = make_goal("build", state=state)
        goals = [
            build,
            make_goal("test", pre_conditions=["build"]),
            make_goal("deploy", pre_conditions=["test"]),
        ]

        effects = evaluator.compute_effects(build, goals)

        assert effects.targets() == ["test", "deploy"]
        assert all(e.state == GoalState.SKIPPED for e in effects)
        assert effects.for_goal("deploy").update.description == f"Skipped deploy because build {reason}"

    def test_non_planned_dependents_untouched(self, evaluator):
        """Goals that already moved on are not skipped."""
        build = make_goal("build", state=GoalState.FAILURE)
        goals = [build, make_goal("test", state=GoalState.SUCCESS, pre_conditions=["build"])]

        assert evaluator.compute_effects(build, goals) == []


class TestSeed:
    """Tests for seeding a freshly planned goal set."""

    def test_roots_are_requested(self, evaluator):
        """Only root goals are requested."""
        goals = [make_goal("build"), make_goal("lint"), make_goal("test", pre_conditions=["build"])]

        assert evaluator.seed(goals).targets() == ["build", "lint"]

    def test_unresolvable_goals_fail(self, evaluator):
        """Goals with missing preconditions fail instead of waiting forever."""
        goals = [make_goal("build"), make_goal("test", pre_conditions=[GoalKey("0-code", "missing")])]

        effects = evaluator.seed(goals)

        failure = effects.for_goal("test")
        assert failure.state == GoalState.FAILURE
        assert "0-code/missing" in failure.update.description
        assert effects.for_goal("build").state == GoalState.REQUESTED

    def test_on_goal_changed_refetches(self, store, evaluator):
        """on_goal_changed works from the stored goal set."""
        build, test = store.create_goals([make_goal("build"), make_goal("test", pre_conditions=["build"])])
        done = store.update(build, GoalUpdate(state=GoalState.SUCCESS))

        assert evaluator.on_goal_changed(done).targets() == ["test"]


class TestFulfillmentCallbacks:
    """Tests for fulfillment callbacks applied on request."""

    def test_callback_data_is_carried(self, store):
        """Callbacks for the goal's fulfillment prepare its data."""
        callbacks = FulfillmentCallbackRegistry()
        callbacks.register("build", lambda g: g.with_data({"prepared": True}))
        evaluator = DependencyEvaluator(store, callbacks, registration="goal-delivery")

        [effect] = evaluator.seed([make_goal("build"), make_goal("other-thing", pre_conditions=["build"])])

        assert effect.update.data == '{"prepared": true}'

    def test_callback_failure(self, store):
        """Callback errors surface as FulfillmentCallbackError."""
        callbacks = FulfillmentCallbackRegistry()

        def broken(goal):
            raise RuntimeError("boom")

        callbacks.register("build", broken)
        evaluator = DependencyEvaluator(store, callbacks, registration="goal-delivery")

        with pytest.raises(FulfillmentCallbackError, match="boom"):
            evaluator.request(make_goal("build"))
