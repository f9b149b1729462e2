from prometheus_client import Counter

AUTOMATION_EXECUTIONS = Counter(
    "automation_executions_total",
    "Automation execution attempts recorded in the execution log.",
    ["automation_type", "status"],
)
SCHEDULER_PASSES = Counter(
    "automation_scheduler_passes_total",
    "Completed scheduler passes.",
    ["trigger"],
)
SCHEDULER_CATEGORY_FAILURES = Counter(
    "automation_scheduler_category_failures_total",
    "Scheduler categories aborted by an infrastructure failure.",
    ["automation_type"],
)
