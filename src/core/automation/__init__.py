from src.core.automation.models import (
    AutoInvestRule,
    AutoInvestRuleCreateRequest,
    AutoInvestRuleUpdateRequest,
    AutomationRule,
    AutomationType,
    ExecutionLogRecord,
    RebalancingRule,
    RebalancingRuleCreateRequest,
    RebalancingRuleUpdateRequest,
    RuleExecutionResult,
    SchedulerPassResult,
    SchedulerStatusResponse,
    TriggerOrder,
    TriggerOrderCreateRequest,
    TriggerOrderUpdateRequest,
)
from src.core.automation.pipeline import AutomationPipeline, OrderRejectedError
from src.core.automation.repository import AutomationRepository, StorageError
from src.core.automation.scheduler import AutomationScheduler
from src.core.automation.service import (
    AutomationConcurrencyError,
    AutomationRuleError,
    AutomationRuleNotFoundError,
    AutomationRuleService,
    AutomationStateConflictError,
    AutomationValidationError,
    RuleDeletionNotAllowedError,
)

__all__ = [
    "AutoInvestRule",
    "AutoInvestRuleCreateRequest",
    "AutoInvestRuleUpdateRequest",
    "AutomationConcurrencyError",
    "AutomationPipeline",
    "AutomationRepository",
    "AutomationRule",
    "AutomationRuleError",
    "AutomationRuleNotFoundError",
    "AutomationRuleService",
    "AutomationScheduler",
    "AutomationStateConflictError",
    "AutomationType",
    "AutomationValidationError",
    "ExecutionLogRecord",
    "OrderRejectedError",
    "RebalancingRule",
    "RebalancingRuleCreateRequest",
    "RebalancingRuleUpdateRequest",
    "RuleDeletionNotAllowedError",
    "RuleExecutionResult",
    "SchedulerPassResult",
    "SchedulerStatusResponse",
    "StorageError",
    "TriggerOrder",
    "TriggerOrderCreateRequest",
    "TriggerOrderUpdateRequest",
]
