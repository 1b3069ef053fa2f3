import unittest
from dataclasses import replace

from procurement_workflow.errors import InvalidTransitionError, UnauthorizedError, ValidationFailedError
from procurement_workflow.workflow.approval_coordinator import (
    NOTES_ADJUDICATION,
    NOTES_NON_LOWEST,
    ApprovalCoordinator,
    ApprovalOutcomeKind,
    conflicted_approver_ids,
    initial_approval_state,
    required_notes,
)
from procurement_workflow.workflow.model import RequestStatus
from tests.fakes import FixedClock, build_request, three_quotes


def _pending(requires_dual: bool, **overrides):
    values = {
        "status": RequestStatus.PENDING_APPROVAL,
        "approval_state": initial_approval_state(requires_dual),
    }
    if requires_dual:
        values.update({"amount": 12000.0, "quotes": three_quotes(), "approver_secondary_id": "appr2"})
    values.update(overrides)
    return build_request(**values)


class SingleApprovalTest(unittest.TestCase):
    def setUp(self) -> None:
        self.coordinator = ApprovalCoordinator(clock=FixedClock())

    def test_single_approval_resolves_with_preferred_quote(self) -> None:
        outcome = self.coordinator.record_approval(_pending(False), "appr1", None, None, lowest_quote_id="q1")
        self.assertEqual(outcome.kind, ApprovalOutcomeKind.RESOLVED)
        self.assertEqual(outcome.selected_quote_id, "q1")
        self.assertTrue(outcome.approval_state.first_complete)
        self.assertTrue(outcome.approval_state.complete)
        self.assertEqual(len(outcome.approval_state.history), 1)

    def test_non_lowest_quote_requires_justification(self) -> None:
        request = _pending(False, amount=12000.0, quotes=three_quotes())
        with self.assertRaises(ValidationFailedError) as ctx:
            self.coordinator.record_approval(request, "appr1", "q2", "  ", lowest_quote_id="q1")
        self.assertEqual(ctx.exception.code, "justification_required")
        self.assertEqual(ctx.exception.payload["notes_required_for"], [NOTES_NON_LOWEST])

        outcome = self.coordinator.record_approval(
            request, "appr1", "q2", "Faster delivery", lowest_quote_id="q1"
        )
        self.assertEqual(outcome.selected_quote_id, "q2")
        self.assertEqual(outcome.approval_state.first_justification, "Faster delivery")

    def test_unassigned_actor_is_refused(self) -> None:
        with self.assertRaises(UnauthorizedError) as ctx:
            self.coordinator.record_approval(_pending(False), "appr2", None, None, lowest_quote_id="q1")
        self.assertEqual(ctx.exception.code, "approver_not_assigned")

    def test_secondary_approver_is_ignored_for_single_approval(self) -> None:
        request = _pending(False, approver_secondary_id="appr2")
        with self.assertRaises(UnauthorizedError):
            self.coordinator.record_approval(request, "appr2", None, None, lowest_quote_id="q1")

    def test_approval_requires_open_round(self) -> None:
        request = build_request(status=RequestStatus.IN_QUEUE)
        with self.assertRaises(InvalidTransitionError) as ctx:
            self.coordinator.record_approval(request, "appr1", None, None, lowest_quote_id="q1")
        self.assertEqual(ctx.exception.code, "approval_not_open")

    def test_quote_must_belong_to_request(self) -> None:
        with self.assertRaises(ValidationFailedError) as ctx:
            self.coordinator.record_approval(_pending(False), "appr1", "q9", "x", lowest_quote_id="q1")
        self.assertEqual(ctx.exception.code, "quote_not_found")


class DualApprovalTest(unittest.TestCase):
    def setUp(self) -> None:
        self.coordinator = ApprovalCoordinator(clock=FixedClock())

    def _approve(self, request, approver_id, quote_id, notes="Reviewed bids"):
        outcome = self.coordinator.record_approval(request, approver_id, quote_id, notes, lowest_quote_id="q1")
        return outcome, replace(request, approval_state=outcome.approval_state)

    def test_dual_approval_needs_adjudication_notes(self) -> None:
        with self.assertRaises(ValidationFailedError) as ctx:
            self.coordinator.record_approval(_pending(True), "appr1", "q1", None, lowest_quote_id="q1")
        self.assertEqual(ctx.exception.payload["notes_required_for"], [NOTES_ADJUDICATION])

    def test_first_approval_leaves_round_pending(self) -> None:
        outcome, request = self._approve(_pending(True), "appr1", "q1")
        self.assertEqual(outcome.kind, ApprovalOutcomeKind.PENDING)
        self.assertFalse(request.approval_state.complete)

    def test_matching_selections_resolve(self) -> None:
        _, request = self._approve(_pending(True), "appr1", "q1")
        outcome, request = self._approve(request, "appr2", "q1")
        self.assertEqual(outcome.kind, ApprovalOutcomeKind.RESOLVED)
        self.assertEqual(outcome.selected_quote_id, "q1")
        self.assertTrue(request.approval_state.complete)
        self.assertEqual([entry.approver_id for entry in request.approval_state.history], ["appr1", "appr2"])

    def test_approver_order_does_not_change_outcome(self) -> None:
        _, request = self._approve(_pending(True), "appr2", "q1")
        outcome, request = self._approve(request, "appr1", "q1")
        self.assertEqual(outcome.kind, ApprovalOutcomeKind.RESOLVED)
        self.assertEqual(outcome.selected_quote_id, "q1")
        self.assertTrue(request.approval_state.complete)

        _, request = self._approve(_pending(True), "appr2", "q2")
        outcome, request = self._approve(request, "appr1", "q1")
        self.assertEqual(outcome.kind, ApprovalOutcomeKind.CONFLICT)
        self.assertEqual(outcome.conflict_detail["first_quote_id"], "q1")
        self.assertEqual(outcome.conflict_detail["second_quote_id"], "q2")

    def test_repeated_approval_only_extends_history(self) -> None:
        first, request = self._approve(_pending(True), "appr1", "q1")
        again, request = self._approve(request, "appr1", "q1")

        self.assertEqual(again.kind, ApprovalOutcomeKind.PENDING)
        before = first.approval_state
        after = again.approval_state
        self.assertEqual(len(after.history), len(before.history) + 1)
        self.assertEqual(after.history[: len(before.history)], before.history)
        self.assertEqual(replace(after, history=before.history), before)

    def test_diverging_selections_conflict_until_revisited(self) -> None:
        _, request = self._approve(_pending(True), "appr1", "q1")
        outcome, request = self._approve(request, "appr2", "q2")
        self.assertEqual(outcome.kind, ApprovalOutcomeKind.CONFLICT)
        self.assertTrue(request.approval_state.conflict)
        self.assertFalse(request.approval_state.complete)
        self.assertEqual(outcome.conflict_detail["second_quote_id"], "q2")
        self.assertEqual(conflicted_approver_ids(request), ("appr1", "appr2"))

        outcome, request = self._approve(request, "appr2", "q1", "Agreed after review")
        self.assertEqual(outcome.kind, ApprovalOutcomeKind.RESOLVED)
        self.assertFalse(request.approval_state.conflict)
        self.assertEqual(len(request.approval_state.history), 3)

    def test_decline_is_recorded_in_approval_history(self) -> None:
        request = _pending(True)
        state = self.coordinator.record_decline(request, "appr2", "Budget frozen")
        self.assertEqual(len(state.history), 1)
        self.assertFalse(state.history[0].approved)
        self.assertEqual(state.history[0].notes, "Budget frozen")

        untouched = self.coordinator.record_decline(request, "buyer", "not an approver")
        self.assertEqual(untouched, request.approval_state)


class RequiredNotesTest(unittest.TestCase):
    def test_reasons(self) -> None:
        self.assertEqual(required_notes(False, "q1", "q1"), [])
        self.assertEqual(required_notes(True, "q2", "q1"), [NOTES_ADJUDICATION, NOTES_NON_LOWEST])
        self.assertEqual(required_notes(False, None, "q1"), [])

    def test_new_round_keeps_earlier_history(self) -> None:
        coordinator = ApprovalCoordinator(clock=FixedClock())
        outcome = coordinator.record_approval(_pending(False), "appr1", "q1", None, lowest_quote_id="q1")
        fresh = initial_approval_state(True, outcome.approval_state)
        self.assertTrue(fresh.requires_dual)
        self.assertFalse(fresh.first_complete)
        self.assertEqual(fresh.history, outcome.approval_state.history)


if __name__ == "__main__":
    unittest.main()
