from __future__ import annotations

import os
import threading
import time
import uuid
from typing import Callable, Dict, Tuple

from flask import Flask

from procurement_workflow.application.service_factory import build_workflow_service
from procurement_workflow.application.workflow_service import WorkflowService
from procurement_workflow.db import close_db, get_db
from procurement_workflow.infrastructure.repositories import OrganizationRepository
from procurement_workflow.observability import bind_request_id


def _expire_vendor_approvals(service: WorkflowService) -> int:
    return len(service.expire_vendor_approvals())


def _send_conflict_reminders(service: WorkflowService) -> int:
    return service.send_quote_conflict_reminders()


HOUSEKEEPING_JOBS: Dict[str, Callable[[WorkflowService], int]] = {
    "vendor_approval_expiry": _expire_vendor_approvals,
    "quote_conflict_reminders": _send_conflict_reminders,
}


class HousekeepingScheduler:
    """Runs the daily housekeeping jobs for every organization.

    A job that fails for one organization is retried after an exponential backoff
    without holding up the other organizations or jobs.
    """

    def __init__(self, app: Flask) -> None:
        self.app = app
        self.interval_seconds = _int_config(app, "HOUSEKEEPING_INTERVAL_SECONDS", 86_400, 60, 7 * 86_400)
        self.min_backoff_seconds = _int_config(app, "HOUSEKEEPING_MIN_BACKOFF_SECONDS", 60, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "HOUSEKEEPING_MAX_BACKOFF_SECONDS",
            3600,
            self.min_backoff_seconds,
            86_400,
        )

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: dict[Tuple[str, str], int] = {}
        self._next_run_at: dict[Tuple[str, str], float] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="housekeeping-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self._seconds_until_next_run())

    def _seconds_until_next_run(self) -> float:
        if not self._next_run_at:
            return float(self.interval_seconds)
        earliest = min(self._next_run_at.values()) - time.monotonic()
        return max(1.0, min(float(self.interval_seconds), earliest))

    def run_once(self) -> Dict[str, Dict[str, int]]:
        results: Dict[str, Dict[str, int]] = {}
        with self.app.app_context(), bind_request_id(f"housekeeping-{uuid.uuid4().hex[:12]}"):
            db = get_db()
            try:
                for tenant_id in OrganizationRepository.list_ids(db):
                    due_jobs = [name for name in HOUSEKEEPING_JOBS if self._is_due((tenant_id, name))]
                    if not due_jobs:
                        continue
                    try:
                        service = build_workflow_service(db, tenant_id, self.app.config)
                    except Exception as exc:  # noqa: BLE001
                        self.app.logger.warning(
                            "housekeeping_service_unavailable",
                            extra={"tenant_id": tenant_id, "error": str(exc)[:500]},
                        )
                        for job_name in due_jobs:
                            self._register_failure((tenant_id, job_name))
                        continue
                    for job_name in due_jobs:
                        outcome = self._run_job(service, tenant_id, job_name, HOUSEKEEPING_JOBS[job_name])
                        if outcome is not None:
                            results.setdefault(tenant_id, {})[job_name] = outcome
            finally:
                close_db()
        return results

    def _run_job(
        self,
        service: WorkflowService,
        tenant_id: str,
        job_name: str,
        job: Callable[[WorkflowService], int],
    ) -> int | None:
        key = (tenant_id, job_name)
        try:
            processed = job(service)
        except Exception as exc:  # noqa: BLE001
            self.app.logger.warning(
                "housekeeping_job_failed",
                extra={"tenant_id": tenant_id, "job": job_name, "error": str(exc)[:500]},
            )
            self._register_failure(key)
            return None
        self._schedule_next_cycle(key)
        self.app.logger.info(
            "housekeeping_job_finished",
            extra={"tenant_id": tenant_id, "job": job_name, "processed": processed},
        )
        return processed

    def _is_due(self, key: Tuple[str, str]) -> bool:
        next_run_at = self._next_run_at.get(key)
        if next_run_at is None:
            return True
        return time.monotonic() >= next_run_at

    def _schedule_next_cycle(self, key: Tuple[str, str]) -> None:
        self._failure_counts.pop(key, None)
        self._next_run_at[key] = time.monotonic() + self.interval_seconds

    def _register_failure(self, key: Tuple[str, str]) -> None:
        failure_count = self._failure_counts.get(key, 0) + 1
        self._failure_counts[key] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[key] = time.monotonic() + backoff_seconds


def start_housekeeping_scheduler(app: Flask) -> HousekeepingScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = HousekeepingScheduler(app)
    scheduler.start()
    app.extensions["housekeeping_scheduler"] = scheduler
    app.logger.info(
        "Housekeeping scheduler started: interval=%ss jobs=%s",
        scheduler.interval_seconds,
        ", ".join(HOUSEKEEPING_JOBS),
    )
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("HOUSEKEEPING_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
