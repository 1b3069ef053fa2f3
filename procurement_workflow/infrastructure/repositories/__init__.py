from .base import BaseRepository, TenantScopeRequiredError
from .evidence_repository import EvidenceRepository
from .organization_repository import OrganizationRepository
from .override_repository import OverrideRepository
from .quote_repository import QuoteRepository
from .request_repository import PurchaseRequestRepository
from .rule_repository import RuleRepository
from .status_history_repository import StatusHistoryRepository
from .user_repository import UserRepository
from .vendor_repository import VendorRepository

__all__ = [
    "BaseRepository",
    "EvidenceRepository",
    "OrganizationRepository",
    "OverrideRepository",
    "PurchaseRequestRepository",
    "QuoteRepository",
    "RuleRepository",
    "StatusHistoryRepository",
    "TenantScopeRequiredError",
    "UserRepository",
    "VendorRepository",
]
