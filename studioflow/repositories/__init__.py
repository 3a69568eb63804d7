"""Repository modules - Data access layer"""
from functools import lru_cache

from .base import (
    AutomationRepository, CampaignRepository, SubscriptionRepository,
    DueItemRepository, ExecutionClaimRepository, AuditRepository,
    SubjectRepository, TenantRepository
)
from ..config.settings import settings


class Repositories:
    """Bundle of every repository the engine needs"""

    def __init__(
        self,
        automations: AutomationRepository,
        campaigns: CampaignRepository,
        subscriptions: SubscriptionRepository,
        due_items: DueItemRepository,
        claims: ExecutionClaimRepository,
        audit: AuditRepository,
        subjects: SubjectRepository,
        tenants: TenantRepository
    ):
        self.automations = automations
        self.campaigns = campaigns
        self.subscriptions = subscriptions
        self.due_items = due_items
        self.claims = claims
        self.audit = audit
        self.subjects = subjects
        self.tenants = tenants


def build_memory_repositories() -> Repositories:
    """Fresh in-process repositories"""
    from .memory_store import (
        MemoryAutomationRepository, MemoryCampaignRepository, MemorySubscriptionRepository,
        MemoryDueItemRepository, MemoryExecutionClaimRepository, MemoryAuditRepository,
        MemorySubjectRepository, MemoryTenantRepository
    )
    return Repositories(
        automations=MemoryAutomationRepository(),
        campaigns=MemoryCampaignRepository(),
        subscriptions=MemorySubscriptionRepository(),
        due_items=MemoryDueItemRepository(),
        claims=MemoryExecutionClaimRepository(),
        audit=MemoryAuditRepository(),
        subjects=MemorySubjectRepository(),
        tenants=MemoryTenantRepository(),
    )


def build_mongo_repositories() -> Repositories:
    """Repositories backed by the configured MongoDB database"""
    from .automation_repo import MongoAutomationRepository
    from .campaign_repo import MongoCampaignRepository
    from .subscription_repo import MongoSubscriptionRepository
    from .due_item_repo import MongoDueItemRepository
    from .execution_repo import MongoExecutionClaimRepository
    from .audit_repo import MongoAuditRepository
    from .subject_repo import MongoSubjectRepository
    from .tenant_repo import MongoTenantRepository
    return Repositories(
        automations=MongoAutomationRepository(),
        campaigns=MongoCampaignRepository(),
        subscriptions=MongoSubscriptionRepository(),
        due_items=MongoDueItemRepository(),
        claims=MongoExecutionClaimRepository(),
        audit=MongoAuditRepository(),
        subjects=MongoSubjectRepository(),
        tenants=MongoTenantRepository(),
    )


@lru_cache()
def get_repositories() -> Repositories:
    """Process-wide repositories for the configured storage backend"""
    if settings.uses_memory_storage:
        return build_memory_repositories()
    return build_mongo_repositories()


__all__ = [
    "Repositories",
    "build_memory_repositories",
    "build_mongo_repositories",
    "get_repositories",
    "AutomationRepository",
    "CampaignRepository",
    "SubscriptionRepository",
    "DueItemRepository",
    "ExecutionClaimRepository",
    "AuditRepository",
    "SubjectRepository",
    "TenantRepository",
]
