import unittest
from datetime import datetime, timezone

from procurement_workflow.workflow.flow_policy import (
    ACTION_LABELS,
    PROCESS_STAGES,
    TRANSITIONS,
    allowed_targets,
    edge_action,
    flow_meta,
    is_terminal,
    resurrection_target,
)
from procurement_workflow.workflow.model import RequestStatus, StatusHistoryEntry


S = RequestStatus
T0 = datetime(2026, 1, 5, tzinfo=timezone.utc)


def _history(*statuses):
    entries = []
    previous = None
    for status in statuses:
        entries.append(StatusHistoryEntry(previous, status, "buyer", T0))
        previous = status
    return tuple(entries)


class FlowPolicyTest(unittest.TestCase):
    def test_required_process_stages_exist(self) -> None:
        keys = [item["key"] for item in PROCESS_STAGES]
        self.assertEqual(keys, ["request", "queue", "approval", "order", "completion"])

    def test_every_status_has_a_transition_table(self) -> None:
        self.assertEqual(set(TRANSITIONS), set(RequestStatus))

    def test_every_edge_action_has_a_label(self) -> None:
        for source, targets in TRANSITIONS.items():
            for target, action in targets.items():
                self.assertIn(action, ACTION_LABELS, f"missing label for {source.value}->{target.value}")

    def test_completed_is_the_only_terminal_status(self) -> None:
        terminal = [status for status in RequestStatus if is_terminal(status)]
        self.assertEqual(terminal, [S.COMPLETED])

    def test_approval_cannot_be_skipped(self) -> None:
        self.assertIsNone(edge_action(S.DRAFT, S.APPROVED))
        self.assertIsNone(edge_action(S.IN_QUEUE, S.APPROVED))
        self.assertIsNone(edge_action(S.APPROVED, S.COMPLETED))
        self.assertEqual(edge_action(S.PENDING_APPROVAL, S.APPROVED), "approve_request")

    def test_ordered_requests_can_only_complete(self) -> None:
        self.assertEqual(allowed_targets(S.ORDERED), [S.COMPLETED])
        self.assertEqual(allowed_targets(None), [])

    def test_rejected_request_returns_to_latest_pre_rejection_stage(self) -> None:
        history = _history(S.SUBMITTED, S.IN_QUEUE, S.PENDING_APPROVAL, S.REJECTED)
        self.assertEqual(resurrection_target(S.REJECTED, history), S.PENDING_APPROVAL)

        history = _history(S.DRAFT, S.IN_QUEUE, S.REJECTED)
        self.assertEqual(resurrection_target(S.REJECTED, history), S.IN_QUEUE)

    def test_rejected_without_known_stage_defaults_to_submitted(self) -> None:
        self.assertEqual(resurrection_target(S.REJECTED, _history(S.DRAFT, S.REJECTED)), S.SUBMITTED)

    def test_canceled_request_restarts_at_submitted(self) -> None:
        history = _history(S.SUBMITTED, S.IN_QUEUE, S.PENDING_APPROVAL, S.APPROVED, S.CANCELED)
        self.assertEqual(resurrection_target(S.CANCELED, history), S.SUBMITTED)

    def test_resurrection_only_applies_to_closed_requests(self) -> None:
        self.assertIsNone(resurrection_target(S.IN_QUEUE, _history(S.SUBMITTED, S.IN_QUEUE)))

    def test_flow_meta_offers_single_resurrection_target(self) -> None:
        meta = flow_meta(S.REJECTED, _history(S.SUBMITTED, S.IN_QUEUE, S.REJECTED))
        targets = [item["to_status"] for item in meta["allowed_transitions"]]
        self.assertEqual(targets, ["IN_QUEUE"])
        self.assertEqual(meta["allowed_transitions"][0]["action"], "resurrect_request")

    def test_flow_meta_marks_current_stage(self) -> None:
        meta = flow_meta(S.ORDERED)
        states = {step["key"]: step["state"] for step in meta["process_steps"]}
        self.assertEqual(meta["stage"], "order")
        self.assertEqual(states["approval"], "completed")
        self.assertEqual(states["order"], "current")
        self.assertEqual(states["completion"], "future")


if __name__ == "__main__":
    unittest.main()
