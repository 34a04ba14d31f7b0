"""ORM models for the rule, costing and credit engines."""

from erp_services.models.costing import (
    CostAdjustment,
    CostAdjustmentLine,
    CostMovement,
    InventoryCostLayer,
    ProductValuation,
)
from erp_services.models.credit import (
    CreditAlert,
    CreditHold,
    CreditLimitChange,
    CreditTransaction,
    CustomerCreditProfile,
)
from erp_services.models.rules import (
    BusinessRule,
    DecisionTable,
    DecisionTableRow,
    RuleExecution,
    RuleFunction,
    RuleSet,
    RuleSetMember,
    RuleVariable,
    RuleVersion,
)

__all__ = [
    "BusinessRule",
    "CostAdjustment",
    "CostAdjustmentLine",
    "CostMovement",
    "CreditAlert",
    "CreditHold",
    "CreditLimitChange",
    "CreditTransaction",
    "CustomerCreditProfile",
    "DecisionTable",
    "DecisionTableRow",
    "InventoryCostLayer",
    "ProductValuation",
    "RuleExecution",
    "RuleFunction",
    "RuleSet",
    "RuleSetMember",
    "RuleVariable",
    "RuleVersion",
]
