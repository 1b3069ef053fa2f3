from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Tuple

from procurement_workflow.errors import ValidationFailedError
from procurement_workflow.workflow.model import (
    EVIDENCE_OVERRIDE_KIND,
    EvidenceKind,
    Override,
    OverrideKind,
    Request,
    utc_now,
)
from procurement_workflow.workflow.validation_gate import GateFailure


logger = logging.getLogger("procurement_workflow.overrides")


def _invalid_kind_failure(kind: object) -> GateFailure:
    return GateFailure(
        code="override_kind_invalid",
        description=f"'{kind}' is not an overridable check",
    )


class OverrideLedger:
    """Records justified bypasses of gate failures.

    One override is active per kind per request; recording a kind again replaces the
    earlier record. Overrides leave the active set only when the evidence they stood in
    for is uploaded; the superseded records stay in storage for audit.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def create(
        self,
        request: Request,
        kind: object,
        justification: str | None,
        actor_id: str,
        *,
        expires_at: datetime | None = None,
    ) -> Tuple[Request, Override]:
        resolved_kind = OverrideKind.parse(kind)
        if resolved_kind is None:
            raise ValidationFailedError(
                [_invalid_kind_failure(kind)],
                overridable=False,
                code="override_kind_invalid",
                message_key="override_kind_invalid",
            )
        text = str(justification or "").strip()
        if not text:
            raise ValidationFailedError(
                [GateFailure(code="justification_required", description="An override requires a written justification")],
                overridable=False,
                code="justification_required",
                message_key="justification_required",
            )

        record = Override(
            kind=resolved_kind,
            justification=text,
            by_actor_id=actor_id,
            at_timestamp=self._clock(),
            expires_at=expires_at,
        )
        overrides = dict(request.overrides)
        replaced = overrides.get(resolved_kind)
        overrides[resolved_kind] = record
        logger.info(
            "override_recorded",
            extra={
                "request_id": request.id,
                "override_kind": resolved_kind.value,
                "actor_id": actor_id,
                "replaced_previous": replaced is not None,
            },
        )
        return replace(request, overrides=overrides), record

    def create_for_failures(
        self,
        request: Request,
        failures: Iterable[GateFailure],
        justification: str | None,
        actor_id: str,
    ) -> Tuple[Request, Tuple[Override, ...]]:
        """Record one override per distinct kind among ``failures``.

        Callers must have checked that every failure is overridable.
        """
        created: list[Override] = []
        seen: set[OverrideKind] = set()
        for failure in failures:
            if failure.override_kind is None or failure.override_kind in seen:
                continue
            seen.add(failure.override_kind)
            request, record = self.create(request, failure.override_kind, justification, actor_id)
            created.append(record)
        return request, tuple(created)

    def clear_for_evidence(self, request: Request, evidence_kind: EvidenceKind) -> Request:
        kind = EVIDENCE_OVERRIDE_KIND.get(evidence_kind)
        if kind is None or kind not in request.overrides:
            return request
        overrides = dict(request.overrides)
        overrides.pop(kind)
        logger.info(
            "override_superseded_by_evidence",
            extra={"request_id": request.id, "override_kind": kind.value, "evidence_kind": evidence_kind.value},
        )
        return replace(request, overrides=overrides)
