import json
import logging
import unittest

from procurement_workflow import create_app
from procurement_workflow.config import Config
from procurement_workflow.core import VendorApprovalChanged, get_event_bus
from procurement_workflow.db import close_db
from procurement_workflow.observability import (
    JsonLogFormatter,
    observe_workflow_concurrent_update,
    observe_workflow_external_timeout,
    observe_workflow_lookup_backoff,
    observe_workflow_override,
    observe_workflow_transition,
    reset_metrics_for_tests,
    set_log_request_id,
)
from tests.helpers.temp_db import TempDbSandbox


class _MetricsConfig(Config):
    TESTING = False
    DB_AUTO_INIT = False


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics")
        cfg = self._temp_db.make_config(_MetricsConfig)
        self.app = create_app(cfg)
        self.client = self.app.test_client()
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.get("/api/unknown")
        get_event_bus().publish(VendorApprovalChanged(tenant_id="org-metrics", vendor_id="v1", approved=False))
        observe_workflow_transition("IN_QUEUE", "PENDING_APPROVAL", "validation_failed")
        observe_workflow_override("quoteRequirement")
        observe_workflow_concurrent_update()
        observe_workflow_external_timeout("rule_registry")
        observe_workflow_lookup_backoff(0.2)

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        content_type = response.headers.get("Content-Type") or ""
        self.assertIn("text/plain", content_type)

        payload = response.get_data(as_text=True)
        self.assertIn("http_request_total", payload)
        self.assertIn("http_request_duration_ms_bucket", payload)
        self.assertIn(
            'workflow_transition_total{from_status="IN_QUEUE",result="validation_failed",to_status="PENDING_APPROVAL"} 1',
            payload,
        )
        self.assertIn('workflow_override_total{kind="quoteRequirement"} 1', payload)
        self.assertIn("workflow_concurrent_update_total 1", payload)
        self.assertIn('workflow_external_timeout_total{dependency="rule_registry"} 1', payload)
        self.assertIn('workflow_lookup_backoff_seconds_bucket{le="0.25"} 1', payload)
        self.assertIn("workflow_lookup_backoff_seconds_count 1", payload)
        self.assertIn("vendor_approval_total", payload)
        self.assertIn('domain_event_emitted_total{event_type="VendorApprovalChanged"} 1', payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("housekeeping-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="procurement_workflow.service",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="transition_committed",
            args=(),
            exc_info=None,
        )
        record.request_number = "PO-202603-001"
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "housekeeping-req-123")
        self.assertEqual(parsed.get("message"), "transition_committed")
        self.assertEqual(parsed.get("request_number"), "PO-202603-001")

    def test_health_reports_metrics_snapshot(self) -> None:
        observe_workflow_concurrent_update()
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json() or {}

        self.assertEqual(payload.get("status"), "ok")
        self.assertEqual(payload.get("db"), "sqlite")
        workflow = (payload.get("metrics") or {}).get("workflow") or {}
        self.assertEqual(workflow.get("concurrent_updates_total"), 1)
        self.assertIn("external_timeouts", workflow)


if __name__ == "__main__":
    unittest.main()
