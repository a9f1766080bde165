# tests/test_approval_votes.py
"""
Test approval vote aggregation.

Any denial denies, abstentions never block, and granted pre-approvals
go through fulfillment callbacks before the goal is requested.
"""

import threading

from delivery.approvals.voting import ApprovalVoteAggregator, Vote, clean_description, unanimous_decision
from delivery.goals.callbacks import FulfillmentCallbackRegistry
from delivery.goals.models import GoalState, Provenance

from conftest import make_goal


def approved_goal(**kwargs):
    return make_goal(
        "deploy",
        state=GoalState.APPROVED,
        description="Approval required: deploy",
        approval=Provenance(user_id="U12345", channel_id="C1"),
        **kwargs,
    )


def pre_approved_goal(**kwargs):
    return make_goal(
        "deploy",
        state=GoalState.PRE_APPROVED,
        description="Start required: deploy",
        pre_approval=Provenance(user_id="U12345", channel_id="C1"),
        **kwargs,
    )


class TestDecision:
    """Tests for the unanimous decision manager."""

    def test_no_votes_grants(self):
        assert unanimous_decision([]) == Vote.GRANTED

    def test_abstentions_do_not_block(self):
        assert unanimous_decision([Vote.ABSTAIN, Vote.GRANTED]) == Vote.GRANTED

    def test_any_denial_denies(self):
        assert unanimous_decision([Vote.GRANTED, Vote.DENIED, Vote.ABSTAIN]) == Vote.DENIED

    def test_clean_description(self):
        """Approval prompt prefixes are stripped."""
        assert clean_description("Approval required: deploy") == "deploy"
        assert clean_description("Start required: deploy") == "deploy"
        assert clean_description(None) == ""


class TestAggregator:
    """Tests for ApprovalVoteAggregator."""

    def test_granted_approval_succeeds(self):
        """An approved goal moves to success with a clean description."""
        aggregator = ApprovalVoteAggregator([lambda g: Vote.GRANTED])

        [effect] = aggregator.on_goal_approved(approved_goal())

        assert effect.state == GoalState.SUCCESS
        assert effect.update.description == "deploy"

    def test_granted_pre_approval_requests(self):
        """A pre-approved goal is requested after callbacks prepared it."""
        callbacks = FulfillmentCallbackRegistry()
        callbacks.register("deploy", lambda g: g.with_data({"ready": 1}))
        aggregator = ApprovalVoteAggregator(callbacks=callbacks)

        [effect] = aggregator.on_goal_approved(pre_approved_goal())

        assert effect.state == GoalState.REQUESTED
        assert effect.update.data == '{"ready": 1}'

    def test_denied_approval_waits_again(self):
        """A denied approval returns to waiting with the stamp cleared."""
        aggregator = ApprovalVoteAggregator([lambda g: Vote.GRANTED, lambda g: Vote.DENIED])

        [effect] = aggregator.on_goal_approved(approved_goal())

        assert effect.state == GoalState.WAITING_FOR_APPROVAL
        assert effect.update.clear_approval
        assert effect.update.description == "Approval required: deploy | approval by @U12345 denied"

    def test_denied_pre_approval_waits_again(self):
        """A denied pre-approval returns to waiting for pre-approval."""
        aggregator = ApprovalVoteAggregator([lambda g: Vote.DENIED])

        [effect] = aggregator.on_goal_approved(pre_approved_goal())

        assert effect.state == GoalState.WAITING_FOR_PRE_APPROVAL
        assert effect.update.clear_pre_approval
        assert effect.update.description.endswith("start by @U12345 denied")

    def test_abstain_decision_changes_nothing(self):
        """A decision manager abstaining leaves the goal alone."""
        aggregator = ApprovalVoteAggregator([lambda g: Vote.GRANTED], decision_manager=lambda votes: Vote.ABSTAIN)

        assert aggregator.on_goal_approved(approved_goal()) == []

    def test_other_states_ignored(self):
        """Only pre_approved and approved goals are voted on."""
        aggregator = ApprovalVoteAggregator([lambda g: Vote.DENIED])

        assert aggregator.on_goal_approved(make_goal("deploy", state=GoalState.IN_PROCESS)) == []

    def test_voters_run_concurrently_on_same_goal(self):
        """Every voter sees the same goal snapshot, on pool threads."""
        seen = []
        barrier = threading.Barrier(3, timeout=5)

        def voter(goal):
            barrier.wait()
            seen.append(goal)
            return Vote.GRANTED

        aggregator = ApprovalVoteAggregator([voter, voter, voter], max_workers=3)
        goal = approved_goal()

        aggregator.on_goal_approved(goal)

        assert len(seen) == 3
        assert all(g is goal for g in seen)
