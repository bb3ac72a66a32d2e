from datetime import datetime, timedelta

import pytest

from quotebroker.database.symbol_store import SymbolStore, needs_detail_refresh
from quotebroker.services.errors import SymbolNotFoundError
from quotebroker.services.symbol_resolver import parse_provider_time, symbol_document


async def test_second_lookup_is_served_from_memory(resolver, fake_client, seeded_person):
    first = await resolver.lookup_symbols(["aapl"])
    second = await resolver.lookup_symbols(["AAPL"])

    assert first["AAPL"].symbol_id == 8049
    assert first["AAPL"].source == "provider"
    assert second["AAPL"].source == "memory"
    assert fake_client.search_calls == ["AAPL"]


async def test_unknown_ticker_gets_an_error_entry(resolver, fake_client, seeded_person):
    result = await resolver.lookup_symbols(["AAPL", "ZZZZ"])

    assert result["AAPL"].found
    assert not result["ZZZZ"].found
    assert result["ZZZZ"].symbol_id is None
    assert result["ZZZZ"].error == "Symbol not found"


async def test_resolve_raises_for_unknown_ticker(resolver, seeded_person):
    with pytest.raises(SymbolNotFoundError):
        await resolver.resolve("ZZZZ")


async def test_store_tier_avoids_provider(resolver, fake_client, database):
    SymbolStore().upsert({"symbol": "SHOP", "symbol_id": 3944133, "currency": "CAD", "description": "SHOPIFY"})

    result = await resolver.lookup_symbols(["SHOP"])

    assert result["SHOP"].symbol_id == 3944133
    assert result["SHOP"].source == "store"
    assert fake_client.search_calls == []


async def test_registry_tier_is_checked_before_store(resolver, registry, fake_client, database):
    registry.positions["TD"] = {"symbol_id": 38738, "symbol": "TD", "description": "TD BANK", "currency": "CAD"}

    result = await resolver.lookup_symbols(["TD"])

    assert result["TD"].source == "positions"
    assert resolver.id_cache.get("TD")["symbol_id"] == 38738
    assert fake_client.search_calls == []


async def test_lookup_without_any_identity_reports_errors(resolver, database):
    result = await resolver.lookup_symbols(["AAPL"])

    assert result["AAPL"].symbol_id is None
    assert "No active person" in result["AAPL"].error


async def test_symbol_details_are_stored_and_reused(resolver, fake_client, seeded_person):
    details = await resolver.get_symbol_details("AAPL")

    assert details["prev_day_close_price"] == 100.0
    assert details["yield_pct"] == 0.5
    assert details["sector"] == "Technology"
    assert fake_client.symbol_calls == [8049]

    again = await resolver.get_symbol_details("AAPL")
    assert again["symbol_id"] == 8049
    assert fake_client.symbol_calls == [8049]


async def test_stream_port_is_cached_per_identity(resolver, fake_client, seeded_person):
    assert await resolver.get_stream_port(seeded_person, [8049]) == 34567
    assert await resolver.get_stream_port(seeded_person, [8049, 27426]) == 34567
    assert fake_client.stream_port_calls == 1


async def test_preload_cache_warms_memory(resolver, database):
    SymbolStore().upsert({"symbol": "RY", "symbol_id": 34658, "currency": "CAD"})

    loaded = await resolver.preload_cache()

    assert loaded == 1
    assert resolver.id_cache.get("RY")["symbol_id"] == 34658


def test_symbol_document_maps_provider_fields():
    doc = symbol_document({"symbol": "aapl", "symbolId": 8049, "listingExchange": "NASDAQ",
                           "yield": 0.5, "industrySector": "Technology"}, with_details=True)

    assert doc["symbol"] == "AAPL"
    assert doc["exchange"] == "NASDAQ"
    assert doc["yield_pct"] == 0.5
    assert doc["sector"] == "Technology"
    assert "description" not in doc


def test_symbol_document_coerces_non_finite_details():
    doc = symbol_document({"symbol": "X", "symbolId": 1, "prevDayClosePrice": float("inf"),
                           "pe": float("nan"), "eps": "1.25", "tradeUnit": None}, with_details=True)

    assert doc["prev_day_close_price"] == 0.0
    assert doc["pe"] == 0.0
    assert doc["eps"] == 1.25
    assert doc["trade_unit"] == 1.0


def test_parse_provider_time_converts_to_naive_utc():
    parsed = parse_provider_time("2026-10-16T15:59:59.000000-04:00")
    assert parsed == datetime(2026, 10, 16, 19, 59, 59)
    assert parse_provider_time("not a date") is None


def test_needs_detail_refresh():
    now = datetime.utcnow()
    assert needs_detail_refresh(None)
    assert needs_detail_refresh({"last_detail_update": None})
    assert needs_detail_refresh({"last_detail_update": now - timedelta(minutes=61)}, now=now)
    assert not needs_detail_refresh({"last_detail_update": now - timedelta(minutes=5)}, now=now)
