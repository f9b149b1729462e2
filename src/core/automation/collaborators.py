from datetime import date, datetime, timezone
from typing import Optional, Protocol

from src.core.automation.models import GoalSnapshot, MarketQuote, PortfolioSnapshot
from src.core.orders.models import ClientProfile, FinalizedOrder, SchemeInfo


class SchemeLookup(Protocol):
    async def get_scheme(self, *, scheme_id: str) -> Optional[SchemeInfo]: ...


class GoalLookup(Protocol):
    async def get_goal(self, *, goal_id: str) -> Optional[GoalSnapshot]: ...


class MarketDataProvider(Protocol):
    async def get_quote(self, *, scheme_id: str) -> Optional[MarketQuote]: ...


class PortfolioProvider(Protocol):
    async def get_portfolio(self, *, client_id: str) -> Optional[PortfolioSnapshot]: ...


class ClientProfileProvider(Protocol):
    async def get_client_profile(self, *, client_id: str) -> Optional[ClientProfile]: ...


class OrderSubmissionSink(Protocol):
    async def submit(self, order: FinalizedOrder) -> str: ...

    async def close(self) -> None: ...


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()
