import unittest

from procurement_workflow import create_app
from procurement_workflow.config import Config
from procurement_workflow.core.event_bus import reset_event_bus_for_tests
from procurement_workflow.db import close_db
from procurement_workflow.messages import error_message, override_hint, success_message
from procurement_workflow.observability import reset_metrics_for_tests
from tests.helpers.seed import seed_organization
from tests.helpers.temp_db import TempDbSandbox


TENANT = "org-api"


class WorkflowApiTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()
        reset_event_bus_for_tests()
        self._temp_db = TempDbSandbox(prefix="workflow_api")
        temp_config = self._temp_db.make_config(
            Config,
            TESTING=True,
            EXTERNAL_TIMEOUT_SECONDS=0,
            LOOKUP_RETRY_ATTEMPTS=1,
            CURRENCY_RATES="USD:1,EUR:1.1",
        )
        self.app = create_app(temp_config)
        self.client = self.app.test_client()
        seed_organization(self._temp_db.connect(), TENANT)

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _headers(self, actor_id: str | None = "requester", tenant_id: str = TENANT) -> dict:
        headers = {"X-Tenant-Id": tenant_id}
        if actor_id:
            headers["X-Actor-Id"] = actor_id
        return headers

    def _create(self, **overrides) -> dict:
        payload = {
            "amount": 500,
            "currency": "USD",
            "status": "SUBMITTED",
            "approver_primary_id": "appr1",
            "quotes": [{"id": "q1", "vendor_id": "v1", "amount": 500}],
            "preferred_quote_id": "q1",
        }
        payload.update(overrides)
        response = self.client.post("/api/requests", json=payload, headers=self._headers())
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()["request"]

    def _transition(self, request_id: str, target: str, actor_id: str = "buyer", **payload):
        return self.client.post(
            f"/api/requests/{request_id}/transitions",
            json={"target": target, **payload},
            headers=self._headers(actor_id),
        )

    def _to_pending(self, request_id: str) -> dict:
        self.assertEqual(self._transition(request_id, "IN_QUEUE").status_code, 200)
        response = self._transition(request_id, "PENDING_APPROVAL")
        self.assertEqual(response.status_code, 200, response.get_json())
        return response.get_json()["request"]

    def test_request_moves_from_creation_to_order(self) -> None:
        created = self._create()
        self.assertTrue(created["number"].startswith("PR-"))
        self.assertEqual(created["status_label"], "Submitted")
        request_id = created["id"]

        queued = self._transition(request_id, "IN_QUEUE")
        body = queued.get_json()
        self.assertEqual(body["message"], success_message("transition_committed"))
        self.assertEqual(body["request"]["flow"]["stage"], "queue")
        self.assertEqual(body["previous_status"], "SUBMITTED")

        pending = self._to_pending_from_queue(request_id)
        self.assertTrue(pending["number"].startswith("PO-"))

        approved = self.client.post(
            f"/api/requests/{request_id}/approvals",
            json={},
            headers=self._headers("appr1"),
        )
        self.assertEqual(approved.status_code, 200)
        body = approved.get_json()
        self.assertEqual(body["message"], success_message("approval_resolved"))
        self.assertEqual(body["request"]["status"], "APPROVED")
        self.assertEqual(body["request"]["selected_quote_id"], "q1")

        state = self.client.get(f"/api/requests/{request_id}/approval-state", headers=self._headers())
        self.assertTrue(state.get_json()["approval_state"]["first_complete"])

        priced = self.client.post(
            f"/api/requests/{request_id}/final-price",
            json={"final_price": 600},
            headers=self._headers("finance"),
        )
        self.assertEqual(priced.status_code, 200)
        body = priced.get_json()
        self.assertFalse(body["within_tolerance"])
        self.assertEqual(body["reason"], override_hint(True))
        self.assertEqual(body["variance"]["failing_rules"][0]["code"], "final_price_variance")

        evidence = self.client.post(
            f"/api/requests/{request_id}/evidence",
            json={"kind": "estimatedDeliveryDate", "reference": "2026-11-30"},
            headers=self._headers("finance"),
        )
        self.assertEqual(evidence.status_code, 201)

        refused = self._transition(request_id, "ORDERED")
        self.assertEqual(refused.status_code, 422)
        body = refused.get_json()
        self.assertEqual(body["error"], "variance_failed")
        self.assertTrue(body["overridable"])

        ordered = self._transition(request_id, "ORDERED", override_justification="Freight surcharge agreed")
        self.assertEqual(ordered.status_code, 200, ordered.get_json())
        body = ordered.get_json()
        self.assertEqual(body["request"]["status"], "ORDERED")
        self.assertEqual([item["kind"] for item in body["overrides_created"]], ["finalPriceVariance"])

        history = self.client.get(f"/api/requests/{request_id}/history", headers=self._headers())
        statuses = [entry["to_status"] for entry in history.get_json()["history"]]
        self.assertEqual(statuses, ["SUBMITTED", "IN_QUEUE", "PENDING_APPROVAL", "APPROVED", "ORDERED"])

    def _to_pending_from_queue(self, request_id: str) -> dict:
        response = self._transition(request_id, "PENDING_APPROVAL")
        self.assertEqual(response.status_code, 200, response.get_json())
        return response.get_json()["request"]

    def test_repeated_transition_is_replayed(self) -> None:
        request_id = self._create()["id"]
        self._transition(request_id, "IN_QUEUE")
        response = self._transition(request_id, "in_queue")
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertTrue(body["replayed"])
        self.assertEqual(body["message"], success_message("transition_replayed"))
        self.assertEqual(body["request"]["version"], 1)

    def test_rejection_needs_notes_and_reopens_only_into_prior_state(self) -> None:
        request_id = self._create()["id"]
        self._to_pending(request_id)

        missing = self.client.post(
            f"/api/requests/{request_id}/approvals",
            json={"decision": "reject"},
            headers=self._headers("appr1"),
        )
        self.assertEqual(missing.status_code, 422)
        self.assertEqual(missing.get_json()["error"], "justification_required")

        rejected = self.client.post(
            f"/api/requests/{request_id}/approvals",
            json={"decision": "reject", "notes": "Budget frozen"},
            headers=self._headers("appr1"),
        )
        self.assertEqual(rejected.status_code, 200)
        flow = rejected.get_json()["request"]["flow"]
        self.assertEqual([item["to_status"] for item in flow["allowed_transitions"]], ["PENDING_APPROVAL"])

        wrong = self._transition(request_id, "SUBMITTED", actor_id="admin")
        self.assertEqual(wrong.status_code, 409)
        self.assertEqual(wrong.get_json()["expected_target"], "PENDING_APPROVAL")

        reopened = self._transition(request_id, "PENDING_APPROVAL", actor_id="admin")
        self.assertEqual(reopened.status_code, 200)

    def test_unknown_decision(self) -> None:
        request_id = self._create()["id"]
        response = self.client.post(
            f"/api/requests/{request_id}/approvals",
            json={"decision": "maybe"},
            headers=self._headers("appr1"),
        )
        self.assertEqual(response.status_code, 400)
        body = response.get_json()
        self.assertEqual(body["error"], "action_invalid")
        self.assertEqual(body["allowed_decisions"], ["approve", "reject", "revise"])

    def test_override_endpoint_unblocks_quote_requirement(self) -> None:
        request_id = self._create(amount=2000, quotes=[], preferred_quote_id=None)["id"]
        self._transition(request_id, "IN_QUEUE")

        blocked = self._transition(request_id, "PENDING_APPROVAL")
        self.assertEqual(blocked.status_code, 422)
        body = blocked.get_json()
        self.assertEqual(body["failing_rules"][0]["code"], "quote_requirement")
        self.assertEqual(body["reason"], override_hint(True))

        override = self.client.post(
            f"/api/requests/{request_id}/overrides",
            json={"kind": "quoteRequirement", "justification": "Emergency repair"},
            headers=self._headers("buyer"),
        )
        self.assertEqual(override.status_code, 201)
        self.assertEqual(override.get_json()["override"]["by_actor_id"], "buyer")

        self.assertEqual(self._transition(request_id, "PENDING_APPROVAL").status_code, 200)

    def test_override_kind_must_be_known(self) -> None:
        request_id = self._create()["id"]
        response = self.client.post(
            f"/api/requests/{request_id}/overrides",
            json={"kind": "approverIneligible", "justification": "please"},
            headers=self._headers("admin"),
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json()["error"], "override_kind_invalid")

    def test_reset_outside_approval_is_refused(self) -> None:
        request_id = self._create()["id"]
        response = self.client.post(
            f"/api/requests/{request_id}/approval-reset",
            json={"reason": "stuck"},
            headers=self._headers("admin"),
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "approval_reset_not_allowed")

    def test_requests_are_scoped_to_the_organization(self) -> None:
        request_id = self._create()["id"]
        response = self.client.get(f"/api/requests/{request_id}", headers=self._headers(tenant_id="org-other"))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "request_not_found")
        self.assertEqual(response.get_json()["message"], error_message("request_not_found"))

    def test_health_and_metrics(self) -> None:
        request_id = self._create()["id"]
        self._transition(request_id, "IN_QUEUE")

        health = self.client.get("/health")
        self.assertEqual(health.status_code, 200)
        payload = health.get_json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["db"], "sqlite")
        self.assertEqual(payload["metrics"]["workflow"]["transitions_total"], 1)

        metrics = self.client.get("/metrics")
        self.assertEqual(metrics.status_code, 200)
        self.assertIn("text/plain", metrics.content_type)
        text = metrics.get_data(as_text=True)
        self.assertIn(
            'workflow_transition_total{from_status="SUBMITTED",result="committed",to_status="IN_QUEUE"} 1',
            text,
        )
        self.assertIn('http_request_total{method="POST",route="/api/requests",status="201"} 1', text)


if __name__ == "__main__":
    unittest.main()
