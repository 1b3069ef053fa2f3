from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List

from procurement_workflow.workflow.model import Approver, EvidenceKind, Request, RequestStatus, Vendor
from procurement_workflow.workflow.rules import Rule


class RuleRegistry(ABC):
    @abstractmethod
    def get_rules(self, organization_id: str) -> Iterable[Rule]:
        raise NotImplementedError


class Authorization(ABC):
    """Decides whether an actor may perform an action on a request.

    ``action`` is an edge action from the flow policy (``"place_order"``), an override
    action (``"override:proforma"``) or one of the non-transition operations
    (``"register_evidence"``, ``"record_final_price"``, ``"reset_approval"``).
    """

    @abstractmethod
    def can_perform(self, actor_id: str, action: str, request: Request) -> bool:
        raise NotImplementedError


class EvidenceStore(ABC):
    @abstractmethod
    def has_evidence(self, request_id: str, kind: EvidenceKind) -> bool:
        raise NotImplementedError

    @abstractmethod
    def record_evidence(
        self,
        request_id: str,
        kind: EvidenceKind,
        *,
        actor_id: str,
        reference: str | None = None,
    ) -> None:
        raise NotImplementedError


class Notifier(ABC):
    @abstractmethod
    def notify(
        self,
        request_id: str,
        from_status: RequestStatus | None,
        to_status: RequestStatus,
        actor_id: str | None,
        note: str = "",
    ) -> None:
        raise NotImplementedError


class VendorDirectory(ABC):
    @abstractmethod
    def get_vendor(self, vendor_id: str) -> Vendor | None:
        raise NotImplementedError

    @abstractmethod
    def set_approval(
        self,
        vendor_id: str,
        *,
        approved: bool,
        expires_at: datetime | None,
        reason: str | None,
        justification: str | None = None,
        note: str | None = None,
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_expired_approvals(self, now: datetime) -> List[Vendor]:
        raise NotImplementedError


class ApproverDirectory(ABC):
    @abstractmethod
    def get_approver(self, approver_id: str) -> Approver | None:
        raise NotImplementedError


class CurrencyConverter(ABC):
    @abstractmethod
    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        raise NotImplementedError
