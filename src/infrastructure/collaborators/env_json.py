import json
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

from src.core.automation.models import GoalSnapshot, MarketQuote, PortfolioSnapshot
from src.core.orders.models import ClientProfile, SchemeInfo

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_catalog(
    catalog_json: Optional[str], *, model: type[ModelT], id_field: str
) -> dict[str, ModelT]:
    """Parses `{id: {...}}` JSON into models, skipping malformed entries."""
    normalized_json = (catalog_json or "").strip()
    if not normalized_json:
        return {}
    try:
        raw = json.loads(normalized_json)
    except json.JSONDecodeError:
        return {}
    if not isinstance(raw, dict):
        return {}

    catalog: dict[str, ModelT] = {}
    for entry_id, definition in raw.items():
        if not isinstance(entry_id, str) or not isinstance(definition, dict):
            continue
        normalized_id = entry_id.strip()
        if not normalized_id:
            continue
        try:
            parsed = model.model_validate({**definition, id_field: normalized_id})
        except ValidationError:
            continue
        catalog[normalized_id] = parsed
    return catalog


class EnvJsonSchemeCatalog:
    def __init__(self, *, catalog_json: Optional[str]) -> None:
        self._schemes = parse_catalog(catalog_json, model=SchemeInfo, id_field="scheme_id")

    async def get_scheme(self, *, scheme_id: str) -> Optional[SchemeInfo]:
        return self._schemes.get(scheme_id)

    async def get_quote(self, *, scheme_id: str) -> Optional[MarketQuote]:
        scheme = self._schemes.get(scheme_id)
        if scheme is None:
            return None
        return MarketQuote(
            scheme_id=scheme.scheme_id,
            nav=scheme.nav,
            price=scheme.nav,
            previous_nav=scheme.previous_nav,
        )

    def list_schemes(self) -> list[SchemeInfo]:
        return sorted(self._schemes.values(), key=lambda item: item.scheme_id)


class EnvJsonGoalCatalog:
    def __init__(self, *, catalog_json: Optional[str]) -> None:
        self._goals = parse_catalog(catalog_json, model=GoalSnapshot, id_field="goal_id")

    async def get_goal(self, *, goal_id: str) -> Optional[GoalSnapshot]:
        return self._goals.get(goal_id)


class EnvJsonPortfolioSnapshots:
    def __init__(self, *, catalog_json: Optional[str]) -> None:
        self._portfolios = parse_catalog(
            catalog_json, model=PortfolioSnapshot, id_field="client_id"
        )

    async def get_portfolio(self, *, client_id: str) -> Optional[PortfolioSnapshot]:
        return self._portfolios.get(client_id)


class EnvJsonClientProfiles:
    def __init__(self, *, catalog_json: Optional[str]) -> None:
        self._profiles = parse_catalog(catalog_json, model=ClientProfile, id_field="client_id")

    async def get_client_profile(self, *, client_id: str) -> Optional[ClientProfile]:
        return self._profiles.get(client_id)
