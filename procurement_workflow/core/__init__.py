from procurement_workflow.core.event_bus import (
    ApprovalRecorded,
    DomainEvent,
    EventBus,
    OverrideCreated,
    QuoteConflictDetected,
    RequestStatusChanged,
    VendorApprovalChanged,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "RequestStatusChanged",
    "ApprovalRecorded",
    "QuoteConflictDetected",
    "OverrideCreated",
    "VendorApprovalChanged",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
