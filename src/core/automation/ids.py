import uuid
from datetime import datetime

AUTO_INVEST_PREFIX = "AUTO"
REBALANCING_PREFIX = "REBAL"
TRIGGER_ORDER_PREFIX = "TRIGGER"
EXECUTION_LOG_PREFIX = "LOG"


def new_automation_id(prefix: str, now: datetime) -> str:
    return f"{prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"
