import json

import httpx
import pytest
import pytest_asyncio

from infra.redis_client import ResponseCache
from models.monitor import Direction
from services.route_catalog import RouteCatalog
from services.transit_client import TransitClient, normalize_vehicle, parse_timestamp

PORTAL_PAYLOAD = {
    "linhas": [
        {
            "id": 4321,
            "codigo": "709",
            "destino": "Terminal Centro",
            "velocidadeMedia": "22,5",
            "veiculos": [
                {"idVeiculo": 11, "latitude": "-23,5501", "longitude": "-46.6330",
                 "dataUltimaTransmissao": "10/05/2024 08:01:02", "sentidoLinha": "ida", "prefixo": "1234"},
                {"idVeiculo": 12, "latitude": None, "longitude": -46.6},
                {"vehicle_id": "13", "lat": -23.56, "lng": -46.64, "timestamp": 1715338862000},
            ],
            "rotas": [
                {"sentido": "ida", "pontos": [
                    {"id": 100, "endereco": "Av. Paulista, 1000", "latitude": -23.5505,
                     "longitude": -46.6333, "sequencia": 1},
                    {"id": 101, "endereco": "Rua Augusta, 200", "latitude": -23.5530,
                     "longitude": -46.6520, "sequencia": 2},
                ]},
                {"sentido": "volta", "pontos": [
                    {"id": 200, "endereco": "Rua Augusta, 250", "latitude": -23.5532,
                     "longitude": -46.6522, "sequencia": 1},
                ]},
            ],
        }
    ]
}


class Provider:
    """httpx.MockTransport handler that can be switched to failing."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.failing = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failing:
            return httpx.Response(503, json={"error": "maintenance"})
        if request.url.path != "/portal":
            return httpx.Response(404)
        if request.url.params.get("linha") != "709":
            return httpx.Response(200, json={"linhas": []})
        return httpx.Response(200, json=PORTAL_PAYLOAD)


@pytest.fixture()
def provider():
    return Provider()


@pytest_asyncio.fixture()
async def client(provider):
    transit = TransitClient(
        "https://transit.example",
        auth=("user", "pass"),
        cache=ResponseCache(ttl_seconds=300),
        transport=httpx.MockTransport(provider),
    )
    yield transit
    await transit.aclose()


def expire_cache(transit: TransitClient):
    for key, (_, value) in list(transit.cache._memory.items()):
        transit.cache._memory[key] = (0.0, value)


@pytest.mark.asyncio
async def test_vehicle_positions_are_normalized(client, provider):
    vehicles = await client.get_vehicle_positions("4321", route_number="709")

    assert [v.vehicle_id for v in vehicles] == ["11", "13"]
    first = vehicles[0]
    assert first.latitude == pytest.approx(-23.5501)
    assert first.direction == "outbound"
    assert first.prefix == "1234"
    assert first.timestamp.hour == 8
    assert vehicles[1].timestamp.year == 2024

    request = provider.requests[0]
    assert request.url.params["linha"] == "709"
    assert request.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_vehicle_positions_empty_on_provider_failure(client, provider):
    assert await client.get_vehicle_positions("4321", route_number="709")
    provider.failing = True
    # positions are never served from stale cache
    assert await client.get_vehicle_positions("4321", route_number="709") == []


@pytest.mark.asyncio
async def test_find_route_learns_route_code(client, provider):
    route = await client.find_route("709")

    assert route.id == "4321"
    assert route.number == "709"
    assert route.name == "Terminal Centro"
    assert route.average_speed_kmph == 22.5

    await client.get_vehicle_positions("4321")
    assert provider.requests[-1].url.params["linha"] == "709"


@pytest.mark.asyncio
async def test_find_route_unknown(client):
    assert await client.find_route("000") is None


@pytest.mark.asyncio
async def test_route_lookups_are_cached(client, provider):
    await client.find_route("709")
    await client.find_route("709")
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_route_lookups_fall_back_to_stale_cache(client, provider):
    await client.find_route("709")
    expire_cache(client)
    provider.failing = True

    route = await client.find_route("709")
    assert route is not None and route.id == "4321"
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_find_stop_by_name_and_direction(client):
    route = await client.find_route("709")

    outbound = await client.find_stop("augusta", route.id, Direction.OUTBOUND)
    assert outbound.id == "101"
    assert outbound.direction == "outbound"

    inbound = await client.find_stop("augusta", route.id, Direction.INBOUND)
    assert inbound.id == "200"

    by_sequence = await client.find_stop("1", route.id, Direction.OUTBOUND)
    assert by_sequence.id == "100"

    assert await client.find_stop("nowhere", route.id) is None


@pytest.mark.asyncio
async def test_get_stop_location(client):
    route = await client.find_route("709")
    stop = await client.get_stop_location("100", route_id=route.id)
    assert (stop.latitude, stop.longitude) == (-23.5505, -46.6333)
    assert await client.get_stop_location("does-not-exist") is None


@pytest.mark.asyncio
async def test_search(client):
    routes = await client.search_routes("709")
    assert [r.number for r in routes] == ["709"]

    await client.get_route_stops("4321")
    stops = await client.search_stops("augusta")
    assert {s.id for s in stops} == {"101", "200"}


@pytest.mark.asyncio
async def test_catalog_fallback_when_provider_down(tmp_path, provider):
    catalog_path = tmp_path / "routes.json"
    catalog_path.write_text(json.dumps({
        "routes": {
            "709": {
                "id": "4321",
                "name": "Terminal Centro",
                "stops": {"outbound": [{"id": "100", "name": "Av. Paulista, 1000",
                                        "latitude": -23.5505, "longitude": -46.6333}]},
            }
        }
    }))
    provider.failing = True
    transit = TransitClient(
        "https://transit.example",
        catalog=RouteCatalog(str(catalog_path)),
        transport=httpx.MockTransport(provider),
    )
    try:
        route = await transit.find_route("709")
        assert route.id == "4321"
        stop = await transit.find_stop("paulista", route.id, Direction.OUTBOUND)
        assert stop.id == "100"
        assert await transit.get_vehicle_positions(route.id) == []
    finally:
        await transit.aclose()


def test_normalize_vehicle_rejects_missing_coordinates():
    assert normalize_vehicle({"idVeiculo": 1, "latitude": "abc", "longitude": 1}) is None
    assert normalize_vehicle("not a dict") is None


def test_parse_timestamp_formats():
    assert parse_timestamp("2024-05-10T08:00:00Z").tzinfo is not None
    assert parse_timestamp("10/05/2024 08:00").day == 10
    assert parse_timestamp(1715338862).year == 2024
    assert parse_timestamp("garbage") is None
