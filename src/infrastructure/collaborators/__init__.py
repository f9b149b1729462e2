from src.infrastructure.collaborators.env_json import (
    EnvJsonClientProfiles,
    EnvJsonGoalCatalog,
    EnvJsonPortfolioSnapshots,
    EnvJsonSchemeCatalog,
)
from src.infrastructure.collaborators.order_sinks import (
    HttpOrderSink,
    InMemoryOrderSink,
    OrderSubmissionError,
)

__all__ = [
    "EnvJsonClientProfiles",
    "EnvJsonGoalCatalog",
    "EnvJsonPortfolioSnapshots",
    "EnvJsonSchemeCatalog",
    "HttpOrderSink",
    "InMemoryOrderSink",
    "OrderSubmissionError",
]
