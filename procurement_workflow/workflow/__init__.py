from .approval_coordinator import ApprovalCoordinator, ApprovalOutcome, ApprovalOutcomeKind
from .model import (
    ApprovalState,
    EvidenceKind,
    Override,
    OverrideKind,
    Quote,
    Request,
    RequestStatus,
    StatusHistoryEntry,
    Vendor,
)
from .overrides import OverrideLedger
from .rules import Rule, RuleKind, RuleSet
from .transition_controller import TransitionController, TransitionResult
from .validation_gate import GateMode, GateResult, ValidationGate

__all__ = [
    "ApprovalCoordinator",
    "ApprovalOutcome",
    "ApprovalOutcomeKind",
    "ApprovalState",
    "EvidenceKind",
    "GateMode",
    "GateResult",
    "Override",
    "OverrideKind",
    "OverrideLedger",
    "Quote",
    "Request",
    "RequestStatus",
    "Rule",
    "RuleKind",
    "RuleSet",
    "StatusHistoryEntry",
    "TransitionController",
    "TransitionResult",
    "ValidationGate",
    "Vendor",
]
