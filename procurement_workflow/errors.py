from __future__ import annotations

from typing import Any, Dict, Iterable

from procurement_workflow.messages import error_message, override_hint


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "The operation could not be completed.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "request_not_found"
    default_message_key = "request_not_found"
    default_http_status = 404


class InvalidTransitionError(UserActionError):
    default_code = "invalid_transition"
    default_message_key = "invalid_transition"
    default_http_status = 409

    def __init__(self, from_status: str | None = None, to_status: str | None = None, **kwargs: Any) -> None:
        payload = dict(kwargs.pop("payload", None) or {})
        if from_status is not None:
            payload.setdefault("from_status", str(from_status))
        if to_status is not None:
            payload.setdefault("to_status", str(to_status))
        payload.setdefault("overridable", False)
        kwargs.setdefault("details", f"{from_status} -> {to_status}" if from_status or to_status else None)
        super().__init__(payload=payload, **kwargs)


class UnauthorizedError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403


def _failure_payload(failure: Any) -> Dict[str, Any]:
    if hasattr(failure, "to_dict"):
        return dict(failure.to_dict())
    return {"code": "rule_failed", "description": str(failure), "override_kind": None, "overridable": False}


class ValidationFailedError(UserActionError):
    """A business-rule gate refused the operation.

    ``failures`` are gate failures (anything exposing ``to_dict`` and ``overridable``).
    The error is overridable only when every failure can be bypassed with a recorded
    justification; one non-overridable failure makes the whole refusal non-overridable.
    """

    default_code = "validation_failed"
    default_message_key = "validation_failed"
    default_http_status = 422

    def __init__(
        self,
        failures: Iterable[Any] = (),
        *,
        overridable: bool | None = None,
        **kwargs: Any,
    ) -> None:
        self.failures = tuple(failures)
        if overridable is None:
            overridable = bool(self.failures) and all(bool(getattr(f, "overridable", False)) for f in self.failures)
        self.overridable = bool(overridable)

        payload: Dict[str, Any] = {
            "failing_rules": [_failure_payload(failure) for failure in self.failures],
            "overridable": self.overridable,
            "reason": override_hint(self.overridable),
        }
        payload.update(kwargs.pop("payload", None) or {})
        if not kwargs.get("details"):
            kwargs["details"] = "; ".join(item["description"] for item in payload["failing_rules"]) or None
        super().__init__(payload=payload, **kwargs)

    @property
    def failing_rule_descriptions(self) -> list[str]:
        return [str(item["description"]) for item in self.payload.get("failing_rules", [])]


class VarianceFailedError(ValidationFailedError):
    default_code = "variance_failed"
    default_message_key = "variance_failed"


class ConcurrentModificationError(UserActionError):
    default_code = "concurrent_modification"
    default_message_key = "concurrent_modification"
    default_http_status = 409


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "external_dependency_unavailable"
    default_http_status = 502
    default_critical = False


class ExternalDependencyUnavailableError(IntegrationError):
    default_code = "external_dependency_unavailable"
    default_message_key = "external_dependency_unavailable"
    default_http_status = 503

    def __init__(self, dependency: str = "unknown", **kwargs: Any) -> None:
        self.dependency = str(dependency or "unknown")
        payload = dict(kwargs.pop("payload", None) or {})
        payload.setdefault("dependency", self.dependency)
        super().__init__(payload=payload, **kwargs)


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True
