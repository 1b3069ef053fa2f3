from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from procurement_workflow.application.service_factory import build_workflow_service
from procurement_workflow.application.workflow_service import WorkflowService
from procurement_workflow.db import get_db
from procurement_workflow.errors import UnauthorizedError, UserActionError
from procurement_workflow.messages import override_hint, status_label, success_message
from procurement_workflow.tenant import current_actor_id, current_tenant_id
from procurement_workflow.workflow.approval_coordinator import ApprovalOutcomeKind
from procurement_workflow.workflow.flow_policy import flow_meta
from procurement_workflow.workflow.model import Request, RequestStatus
from procurement_workflow.workflow.transition_controller import TransitionResult


workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/requests")


APPROVAL_DECISIONS = {
    "reject": RequestStatus.REJECTED,
    "revise": RequestStatus.REVISION_REQUIRED,
}

_APPROVAL_MESSAGES = {
    ApprovalOutcomeKind.RESOLVED: "approval_resolved",
    ApprovalOutcomeKind.PENDING: "approval_pending",
    ApprovalOutcomeKind.CONFLICT: "approval_conflict",
}


def _service() -> WorkflowService:
    return build_workflow_service(get_db(), current_tenant_id(), current_app.config)


def _actor_id() -> str:
    actor_id = current_actor_id()
    if not actor_id:
        raise UnauthorizedError(code="actor_required", message_key="actor_required", http_status=401)
    return actor_id


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise UserActionError(
            code="request_invalid",
            message_key="request_invalid",
            details="a JSON object is expected",
        )
    return payload


def _request_snapshot(item: Request) -> Dict[str, Any]:
    data = item.to_dict()
    data["status_label"] = status_label(item.status.value)
    data["flow"] = flow_meta(item.status, item.status_history)
    return data


def _transition_response(result: TransitionResult):
    body = result.to_dict()
    if result.approval is not None:
        message_key = _APPROVAL_MESSAGES[result.approval.kind]
    elif result.replayed:
        message_key = "transition_replayed"
    else:
        message_key = "transition_committed"
    body["message"] = success_message(message_key)
    body["request"] = _request_snapshot(result.request)
    return jsonify(body), 200


@workflow_bp.route("", methods=["POST"])
def create_request():
    created = _service().create_request(_json_body(), _actor_id())
    return jsonify({"message": success_message("request_created"), "request": _request_snapshot(created)}), 201


@workflow_bp.route("/<request_id>", methods=["GET"])
def get_request(request_id: str):
    return jsonify({"request": _request_snapshot(_service().get_request(request_id))}), 200


@workflow_bp.route("/<request_id>/transitions", methods=["POST"])
def request_transition(request_id: str):
    payload = _json_body()
    target = payload.pop("target", None) or payload.pop("to_status", None)
    if not target:
        raise UserActionError(code="request_invalid", message_key="request_invalid", details="target is required")
    result = _service().request_transition(request_id, target, _actor_id(), payload)
    return _transition_response(result)


@workflow_bp.route("/<request_id>/approvals", methods=["POST"])
def record_approval(request_id: str):
    payload = _json_body()
    actor_id = _actor_id()
    decision = str(payload.get("decision") or "approve").strip().lower()
    service = _service()
    if decision == "approve":
        result = service.record_approval(
            request_id,
            actor_id,
            quote_id=payload.get("quote_id"),
            justification=payload.get("justification"),
        )
    elif decision in APPROVAL_DECISIONS:
        result = service.request_transition(
            request_id,
            APPROVAL_DECISIONS[decision],
            actor_id,
            {"notes": payload.get("notes") or payload.get("justification")},
        )
    else:
        raise UserActionError(
            code="action_invalid",
            message_key="action_invalid",
            details=f"unknown decision '{decision}'",
            payload={"allowed_decisions": ["approve", *APPROVAL_DECISIONS]},
        )
    return _transition_response(result)


@workflow_bp.route("/<request_id>/overrides", methods=["POST"])
def create_override(request_id: str):
    payload = _json_body()
    updated, record = _service().create_override(
        request_id,
        payload.get("kind"),
        payload.get("justification"),
        _actor_id(),
        expires_at=payload.get("expires_at"),
    )
    return (
        jsonify(
            {
                "message": success_message("override_created"),
                "override": record.to_dict(),
                "request": _request_snapshot(updated),
            }
        ),
        201,
    )


@workflow_bp.route("/<request_id>/evidence", methods=["POST"])
def register_evidence(request_id: str):
    payload = _json_body()
    updated = _service().register_evidence(
        request_id,
        payload.get("kind"),
        _actor_id(),
        reference=payload.get("reference"),
    )
    return jsonify({"message": success_message("evidence_registered"), "request": _request_snapshot(updated)}), 201


@workflow_bp.route("/<request_id>/final-price", methods=["POST"])
def record_final_price(request_id: str):
    payload = _json_body()
    updated, gate = _service().record_final_price(request_id, payload.get("final_price"), _actor_id())
    body = {
        "message": success_message("final_price_recorded"),
        "variance": gate.to_dict(),
        "within_tolerance": gate.ok,
        "request": _request_snapshot(updated),
    }
    if not gate.ok:
        body["reason"] = override_hint(all(failure.overridable for failure in gate.failures))
    return jsonify(body), 200


@workflow_bp.route("/<request_id>/approval-reset", methods=["POST"])
def reset_approval_state(request_id: str):
    payload = _json_body()
    result = _service().reset_approval_state(request_id, _actor_id(), payload.get("reason"))
    body = result.to_dict()
    body["message"] = success_message("approval_reset")
    body["request"] = _request_snapshot(result.request)
    return jsonify(body), 200


@workflow_bp.route("/<request_id>/history", methods=["GET"])
def get_status_history(request_id: str):
    entries = _service().get_status_history(request_id)
    return jsonify({"request_id": request_id, "history": [entry.to_dict() for entry in entries]}), 200


@workflow_bp.route("/<request_id>/approval-state", methods=["GET"])
def get_approval_state(request_id: str):
    state = _service().get_approval_state(request_id)
    return jsonify({"request_id": request_id, "approval_state": state.to_dict() if state else None}), 200
