from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Dict, List

from procurement_workflow.errors import ConcurrentModificationError
from procurement_workflow.infrastructure.repositories import (
    OverrideRepository,
    PurchaseRequestRepository,
    QuoteRepository,
    StatusHistoryRepository,
)
from procurement_workflow.workflow.model import (
    ApprovalState,
    Override,
    OverrideKind,
    Quote,
    Request,
    RequestStatus,
    StatusHistoryEntry,
    parse_timestamp,
    to_utc,
    utc_now,
)
from procurement_workflow.workflow.store import RequestStore


logger = logging.getLogger("procurement_workflow.store")

SUPERSEDED_BY_EVIDENCE = "evidence_uploaded"
SUPERSEDED_BY_REPLACEMENT = "replaced"

_NUMBER_SEQUENCE = re.compile(r"-(\d+)$")


def db_timestamp(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamps so stored values compare correctly as text."""
    resolved = to_utc(value)
    if resolved is None:
        return None
    return resolved.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _float_or_none(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


class SqlRequestStore(RequestStore):
    def __init__(self, db, tenant_id: str) -> None:
        self.db = db
        self.tenant_id = tenant_id
        self.requests = PurchaseRequestRepository(tenant_id=tenant_id)
        self.quotes = QuoteRepository(tenant_id=tenant_id)
        self.history = StatusHistoryRepository(tenant_id=tenant_id)
        self.overrides = OverrideRepository(tenant_id=tenant_id)

    def transaction(self):
        return self.db.transaction()

    # -- reads ---------------------------------------------------------------

    def load(self, request_id: str) -> Request | None:
        row = self.requests.get_by_id(self.db, request_id)
        if row is None:
            return None
        quotes = tuple(
            Quote(id=str(item["id"]), vendor_id=str(item["vendor_id"]), amount=float(item["amount"]), currency=item["currency"])
            for item in self.quotes.list_for_request(self.db, request_id)
        )
        history = tuple(
            StatusHistoryEntry(
                from_status=RequestStatus.parse(item["from_status"]) if item["from_status"] else None,
                to_status=RequestStatus(item["to_status"]),
                actor_id=item["actor_id"],
                timestamp=parse_timestamp(item["occurred_at"]),
                notes=item["notes"] or "",
            )
            for item in self.history.list_for_request(self.db, request_id)
        )
        overrides: Dict[OverrideKind, Override] = {}
        for item in self.overrides.list_active(self.db, request_id):
            kind = OverrideKind.parse(item["kind"])
            if kind is None:
                logger.warning("override_kind_unknown", extra={"request_id": request_id, "kind": item["kind"]})
                continue
            overrides[kind] = Override(
                kind=kind,
                justification=item["justification"],
                by_actor_id=item["by_actor_id"],
                at_timestamp=parse_timestamp(item["at_timestamp"]),
                expires_at=parse_timestamp(item["expires_at"]),
            )
        raw_state = row.get("approval_state_json")
        return Request(
            id=str(row["id"]),
            number=str(row["number"]),
            organization_id=str(row["tenant_id"]),
            amount=float(row["amount"]),
            currency=str(row["currency"]),
            status=RequestStatus(row["status"]),
            requestor_id=row.get("requestor_id"),
            approver_primary_id=row.get("approver_primary_id"),
            approver_secondary_id=row.get("approver_secondary_id"),
            quotes=quotes,
            preferred_quote_id=row.get("preferred_quote_id"),
            selected_quote_id=row.get("selected_quote_id"),
            approval_state=ApprovalState.from_dict(json.loads(raw_state)) if raw_state else None,
            overrides=overrides,
            status_history=history,
            final_price=_float_or_none(row.get("final_price")),
            completed_at=parse_timestamp(row.get("completed_at")),
            version=int(row.get("version") or 0),
        )

    def list_by_status(self, status: RequestStatus) -> List[Request]:
        loaded = [self.load(request_id) for request_id in self.requests.list_ids_by_status(self.db, status.value)]
        return [item for item in loaded if item is not None]

    def next_number(self, now: datetime) -> str:
        period = to_utc(now).strftime("%Y%m")
        highest = 0
        for number in self.requests.list_numbers_for_period(self.db, period):
            match = _NUMBER_SEQUENCE.search(number)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"PR-{period}-{highest + 1:03d}"

    # -- writes --------------------------------------------------------------

    @staticmethod
    def _mutable_fields(request: Request) -> Dict[str, Any]:
        return {
            "number": request.number,
            "status": request.status.value,
            "approver_primary_id": request.approver_primary_id,
            "approver_secondary_id": request.approver_secondary_id,
            "preferred_quote_id": request.preferred_quote_id,
            "selected_quote_id": request.selected_quote_id,
            "final_price": request.final_price,
            "approval_state_json": json.dumps(request.approval_state.to_dict()) if request.approval_state else None,
            "completed_at": db_timestamp(request.completed_at),
        }

    def _append_history(self, request_id: str, entries, start_seq: int) -> None:
        for offset, entry in enumerate(entries):
            self.history.append(
                self.db,
                request_id=request_id,
                seq=start_seq + offset,
                from_status=entry.from_status.value if entry.from_status else None,
                to_status=entry.to_status.value,
                actor_id=entry.actor_id,
                occurred_at=db_timestamp(entry.timestamp),
                notes=entry.notes or None,
            )

    def _add_override(self, request_id: str, record: Override) -> None:
        self.overrides.add(
            self.db,
            request_id=request_id,
            kind=record.kind.value,
            justification=record.justification,
            by_actor_id=record.by_actor_id,
            at_timestamp=db_timestamp(record.at_timestamp),
            expires_at=db_timestamp(record.expires_at),
        )

    def create(self, request: Request) -> Request:
        fields = self._mutable_fields(request)
        fields.pop("number")
        fields.update(
            {
                "amount": float(request.amount),
                "currency": request.currency,
                "requestor_id": request.requestor_id,
            }
        )
        with self.db.transaction():
            self.requests.create(self.db, request_id=request.id, number=request.number, fields=fields)
            self.quotes.add_many(self.db, request.id, [asdict(quote) for quote in request.quotes])
            self._append_history(request.id, request.status_history, 1)
            for record in request.overrides.values():
                self._add_override(request.id, record)
        return replace(request, version=0)

    def save(self, previous: Request, updated: Request) -> Request:
        if updated.id != previous.id:
            raise ValueError("save() must compare a request with its own previous state")
        known = len(previous.status_history)
        if updated.status_history[:known] != previous.status_history:
            raise ValueError("status history is append-only")

        with self.db.transaction():
            if not self.requests.update_if_version(self.db, updated.id, previous.version, self._mutable_fields(updated)):
                logger.warning(
                    "request_version_conflict",
                    extra={"request_id": updated.id, "expected_version": previous.version},
                )
                raise ConcurrentModificationError(
                    details=f"request {updated.id} changed since version {previous.version}",
                    payload={"request_id": updated.id, "expected_version": previous.version},
                )
            self._append_history(updated.id, updated.status_history[known:], known + 1)

            now = db_timestamp(utc_now())
            for kind, record in previous.overrides.items():
                if kind not in updated.overrides:
                    self.overrides.supersede(
                        self.db, request_id=updated.id, kind=kind.value, superseded_at=now, reason=SUPERSEDED_BY_EVIDENCE
                    )
            for kind, record in updated.overrides.items():
                existing = previous.overrides.get(kind)
                if existing == record:
                    continue
                if existing is not None:
                    self.overrides.supersede(
                        self.db, request_id=updated.id, kind=kind.value, superseded_at=now, reason=SUPERSEDED_BY_REPLACEMENT
                    )
                self._add_override(updated.id, record)
        return replace(updated, version=previous.version + 1)

    def override_audit(self, request_id: str) -> list[dict]:
        return self.overrides.list_all(self.db, request_id)
