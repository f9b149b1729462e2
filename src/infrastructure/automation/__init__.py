from src.infrastructure.automation.in_memory import InMemoryAutomationRepository
from src.infrastructure.automation.postgres import PostgresAutomationRepository
from src.infrastructure.automation.sqlite import SqliteAutomationRepository

__all__ = [
    "InMemoryAutomationRepository",
    "PostgresAutomationRepository",
    "SqliteAutomationRepository",
]
