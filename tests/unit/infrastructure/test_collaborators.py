import json
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from src.core.orders.models import FinalizedOrder, SchemeInfo, SubmittedOrderRecord
from src.infrastructure.collaborators import (
    EnvJsonClientProfiles,
    EnvJsonGoalCatalog,
    EnvJsonPortfolioSnapshots,
    EnvJsonSchemeCatalog,
    HttpOrderSink,
    InMemoryOrderSink,
    OrderSubmissionError,
)
from src.infrastructure.collaborators.env_json import parse_catalog


def _order() -> FinalizedOrder:
    return FinalizedOrder(
        client_id="cl_001",
        order_type="Purchase",
        scheme_id="sch_eq_01",
        amount=Decimal("5000.00"),
        units=Decimal("200.0000"),
        nav=Decimal("25"),
        automation_type="AutoInvest",
        automation_id="AUTO-20250105-0000000001",
    )


def test_parse_catalog_skips_malformed_entries():
    catalog = parse_catalog(
        json.dumps(
            {
                "sch_eq_01": {"name": "Lotus Bluechip Equity Fund", "nav": "25"},
                "sch_bad": {"nav": "25"},
                " ": {"name": "Blank"},
                "sch_list": ["not", "a", "dict"],
            }
        ),
        model=SchemeInfo,
        id_field="scheme_id",
    )
    assert list(catalog) == ["sch_eq_01"]
    assert catalog["sch_eq_01"].nav == Decimal("25")


@pytest.mark.parametrize("raw", [None, "", "   ", "{not json", "[]"])
def test_parse_catalog_tolerates_missing_or_invalid_json(raw):
    assert parse_catalog(raw, model=SchemeInfo, id_field="scheme_id") == {}


@pytest.mark.asyncio
async def test_env_json_catalogs_resolve_entries():
    schemes = EnvJsonSchemeCatalog(
        catalog_json=json.dumps(
            {
                "sch_eq_01": {
                    "name": "Lotus Bluechip Equity Fund",
                    "nav": "25",
                    "previous_nav": "26",
                },
                "sch_debt_01": {"name": "Lotus Short Duration Fund", "nav": "10"},
            }
        )
    )
    goals = EnvJsonGoalCatalog(
        catalog_json=json.dumps({"goal_retire": {"name": "Retirement", "progress": "72.5"}})
    )
    portfolios = EnvJsonPortfolioSnapshots(
        catalog_json=json.dumps(
            {"cl_001": {"total_value": "100000", "available_balance": "5000"}}
        )
    )
    profiles = EnvJsonClientProfiles(
        catalog_json=json.dumps({"cl_001": {"risk_acknowledged": True}})
    )

    quote = await schemes.get_quote(scheme_id="sch_eq_01")
    assert quote.nav == Decimal("25")
    assert quote.previous_nav == Decimal("26")
    assert await schemes.get_quote(scheme_id="sch_missing") is None
    assert [item.scheme_id for item in schemes.list_schemes()] == ["sch_debt_01", "sch_eq_01"]
    assert (await goals.get_goal(goal_id="goal_retire")).progress == Decimal("72.5")
    assert (await portfolios.get_portfolio(client_id="cl_001")).available_balance == Decimal(
        "5000"
    )
    assert (await profiles.get_client_profile(client_id="cl_001")).risk_acknowledged is True


@pytest.mark.asyncio
async def test_in_memory_sink_assigns_order_ids():
    sink = InMemoryOrderSink()
    first = await sink.submit(_order())
    second = await sink.submit(_order())

    assert first.startswith("ord_")
    assert first != second
    assert [order_id for order_id, _ in sink.submitted()] == [first, second]


@pytest.mark.asyncio
async def test_http_sink_posts_order_json_and_returns_order_id():
    captured = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"order_id": "oms_123"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    sink = HttpOrderSink(url="http://oms.local/orders", client=client)

    order_id = await sink.submit(_order())
    await sink.close()

    assert order_id == "oms_123"
    assert captured["body"]["amount"] == "5000.00"
    assert captured["body"]["automation_id"] == "AUTO-20250105-0000000001"


@pytest.mark.asyncio
async def test_http_sink_maps_failures_to_submission_errors():
    failing = HttpOrderSink(
        url="http://oms.local/orders",
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda _request: httpx.Response(503))
        ),
    )
    anonymous = HttpOrderSink(
        url="http://oms.local/orders",
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda _request: httpx.Response(200, json={}))
        ),
    )

    with pytest.raises(OrderSubmissionError, match="ORDER_SUBMISSION_FAILED"):
        await failing.submit(_order())
    with pytest.raises(OrderSubmissionError, match="ORDER_SUBMISSION_MISSING_ORDER_ID"):
        await anonymous.submit(_order())


@pytest.mark.asyncio
async def test_http_sink_close_releases_the_client():
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda _request: httpx.Response(200, json={}))
    )
    sink = HttpOrderSink(url="http://oms.local/orders", client=client)

    await sink.close()

    assert client.is_closed is True


def test_http_sink_requires_url():
    with pytest.raises(RuntimeError, match="AUTOMATION_ORDER_SINK_URL_REQUIRED"):
        HttpOrderSink(url="  ")


def test_submitted_order_record_serializes_decimals_as_strings():
    record = SubmittedOrderRecord(
        **_order().model_dump(),
        order_id="ord_3f1a9c2b7d10",
        submitted_at=datetime(2025, 2, 5, 9, 0, tzinfo=UTC),
    )
    payload = record.model_dump(mode="json")

    assert payload["units"] == "200.0000"
    assert payload["amount"] == "5000.00"
    assert payload["submitted_at"].startswith("2025-02-05T09:00:00")
