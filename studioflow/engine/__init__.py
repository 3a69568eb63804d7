"""Automation Engine - Trigger evaluation, timing, dispatch and delivery"""
from .engine import AutomationEngine, build_dispatch_plan, get_engine
from .trigger_evaluator import TriggerEvaluator
from .timing_resolver import TimingResolver
from .dispatcher import Dispatcher
from .delivery import DeliveryRouter, ContentResolver, build_delivery_router
from .subscription_ledger import SubscriptionLedger
from .rule_validator import RuleValidator
from .audit_writer import AuditWriter

__all__ = [
    "AutomationEngine",
    "build_dispatch_plan",
    "get_engine",
    "TriggerEvaluator",
    "TimingResolver",
    "Dispatcher",
    "DeliveryRouter",
    "ContentResolver",
    "build_delivery_router",
    "SubscriptionLedger",
    "RuleValidator",
    "AuditWriter",
]
