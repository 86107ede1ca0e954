"""Tests for the backend client seam and cached snapshot codec."""
from __future__ import annotations

import json
from collections import OrderedDict
from types import SimpleNamespace

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from conftest import make_contributor, make_snapshot
from egg_tracker.models import AccountSnapshot, BuffState, ContractSnapshot
from egg_tracker.protocol import (
    DataError,
    HttpProtocolClient,
    RejectedError,
    TransportError,
    decode_snapshot,
    encode_snapshot,
    is_snapshot_cleared,
    load_codec,
)


class JsonCodec:
    """Stand-in wire format: plain JSON instead of framed binary."""

    def encode_account_request(self, ei):
        return json.dumps({"ei": ei})

    def decode_account(self, payload):
        data = json.loads(payload)
        return AccountSnapshot(ei=data["ei"], nickname=data.get("nickname"), fetched_at=0)

    def encode_coop_status_request(self, contract_id, room, ei):
        return json.dumps({"contract": contract_id, "room": room, "ei": ei})

    def decode_coop_status(self, payload):
        return decode_snapshot(payload)


@pytest_asyncio.fixture
async def backend():
    requests = []

    async def first_contact(request):
        form = await request.post()
        body = json.loads(form["data"])
        requests.append(("account", body))
        if body["ei"] == "EI9999999999999999":
            return web.Response(status=403, text="banned")
        if body["ei"] == "EI8888888888888888":
            return web.Response(body=b"not json")
        return web.json_response({"ei": body["ei"], "nickname": "farmer"})

    async def coop_status(request):
        form = await request.post()
        body = json.loads(form["data"])
        requests.append(("coop", body))
        snapshot = make_snapshot(body["contract"], body["room"])
        return web.Response(body=encode_snapshot(snapshot))

    app = web.Application()
    app.router.add_post("/ei/bot_first_contact", first_contact)
    app.router.add_post("/ei/coop_status", coop_status)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield SimpleNamespace(url=str(server.make_url("/")), requests=requests)
    await server.close()


@pytest.mark.asyncio
async def test_fetch_account_round_trip(backend):
    client = HttpProtocolClient(JsonCodec(), api_base=backend.url)
    try:
        snapshot = await client.fetch_account("EI0000000000000001")
    finally:
        await client.close()

    assert snapshot.nickname == "farmer"
    assert backend.requests == [("account", {"ei": "EI0000000000000001"})]


@pytest.mark.asyncio
async def test_fetch_room_passes_identifiers(backend):
    client = HttpProtocolClient(JsonCodec(), api_base=backend.url)
    try:
        snapshot = await client.fetch_contract_room("spring-2024", "room-1", "EI0000000000000001")
    finally:
        await client.close()

    assert snapshot.coop_identifier == "room-1"
    assert backend.requests == [
        ("coop", {"contract": "spring-2024", "room": "room-1", "ei": "EI0000000000000001"})
    ]


@pytest.mark.asyncio
async def test_error_status_is_rejection(backend):
    client = HttpProtocolClient(JsonCodec(), api_base=backend.url)
    try:
        with pytest.raises(RejectedError) as info:
            await client.fetch_account("EI9999999999999999")
    finally:
        await client.close()

    assert info.value.is_user_error
    assert info.value.kind == "user"


@pytest.mark.asyncio
async def test_undecodable_payload_is_data_error(backend):
    client = HttpProtocolClient(JsonCodec(), api_base=backend.url)
    try:
        with pytest.raises(DataError):
            await client.fetch_account("EI8888888888888888")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unreachable_backend_is_transport_error(unused_tcp_port):
    client = HttpProtocolClient(JsonCodec(), api_base=f"http://127.0.0.1:{unused_tcp_port}", timeout=2)
    try:
        with pytest.raises(TransportError) as info:
            await client.fetch_account("EI0000000000000001")
    finally:
        await client.close()

    assert info.value.is_system_error


def test_cached_snapshot_keeps_contributor_details():
    contributor = make_contributor("alice", 1e14, offline=120.0)
    contributor.buff_history = [BuffState(earnings=1.2, egg_laying_rate=1.1)]
    snapshot = make_snapshot(contributors=[contributor], cleared_for_exit=True)

    restored = decode_snapshot(encode_snapshot(snapshot))

    assert isinstance(restored, ContractSnapshot)
    assert restored == snapshot
    assert is_snapshot_cleared(encode_snapshot(snapshot))


def test_malformed_cache_body():
    with pytest.raises(DataError):
        decode_snapshot(b"{not json")
    with pytest.raises(DataError):
        decode_snapshot(b'{"total_amount": 1}')
    assert not is_snapshot_cleared(b"garbage")


def test_load_codec():
    assert isinstance(load_codec("collections:OrderedDict"), OrderedDict)
    with pytest.raises(ValueError):
        load_codec("collections")
    with pytest.raises(ModuleNotFoundError):
        load_codec("no_such_module_here:Codec")
