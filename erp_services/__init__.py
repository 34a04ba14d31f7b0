"""
erp_services -- Stateful orchestration for the rule, costing and credit
engines, and the composition root that wires every engine together.

Services accept a Session, flush and never commit; the caller owns the
transaction (see ``erp_kernel.db.engine.session_scope``).
"""

from erp_services.context import ErpContext, build_context
from erp_services.costing_service import CostingService
from erp_services.credit_service import CreditService
from erp_services.rule_service import RuleService

__all__ = [
    "CostingService",
    "CreditService",
    "ErpContext",
    "RuleService",
    "build_context",
]
