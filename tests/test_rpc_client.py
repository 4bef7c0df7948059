import asyncio
import json
from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from zlink_node.core.exceptions import (
    RPCApplicationError,
    RPCAuthError,
    RPCConnectionError,
    RPCProtocolError,
    RPCTimeoutError,
)
from zlink_node.core.types import NodeEndpoint
from zlink_node.rpc.client import DaemonRPCClient
from zlink_node.rpc.methods import DaemonAPI


def make_app(handler):
    app = web.Application()
    app.router.add_post("/", handler)
    return app


async def start_server(handler) -> TestServer:
    server = TestServer(make_app(handler), host="127.0.0.1")
    await server.start_server()
    return server


def endpoint_for(server: TestServer, user="user", password="secret") -> NodeEndpoint:
    return NodeEndpoint(host="127.0.0.1", port=server.port, rpc_user=user, rpc_password=password)


@pytest.mark.asyncio
async def test_call_returns_result_and_sends_basic_auth():
    seen = {}

    async def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = await request.json()
        return web.json_response({"result": {"blocks": 42}, "error": None, "id": seen["body"]["id"]})

    server = await start_server(handler)
    try:
        async with DaemonRPCClient(endpoint_for(server)) as client:
            result = await client.call("getinfo")
    finally:
        await server.close()

    assert result == {"blocks": 42}
    assert seen["auth"].startswith("Basic ")
    assert seen["body"]["method"] == "getinfo"
    assert seen["body"]["params"] == []


@pytest.mark.asyncio
async def test_amounts_are_parsed_as_decimal():
    async def handler(request):
        return web.Response(text='{"result": {"total": 0.10000001}, "error": null, "id": 1}',
                            content_type="application/json")

    server = await start_server(handler)
    try:
        async with DaemonRPCClient(endpoint_for(server)) as client:
            result = await client.call("z_gettotalbalance", [1])
    finally:
        await server.close()

    assert result["total"] == Decimal("0.10000001")


@pytest.mark.asyncio
async def test_unauthorized_is_auth_error():
    async def handler(request):
        return web.Response(status=401)

    server = await start_server(handler)
    try:
        async with DaemonRPCClient(endpoint_for(server)) as client:
            with pytest.raises(RPCAuthError):
                await client.call("getinfo")
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_daemon_error_is_passed_through_verbatim():
    async def handler(request):
        body = await request.json()
        return web.json_response(
            {"result": None, "error": {"code": -6, "message": "Insufficient funds"}, "id": body["id"]},
            status=500)

    server = await start_server(handler)
    try:
        async with DaemonRPCClient(endpoint_for(server)) as client:
            with pytest.raises(RPCApplicationError) as excinfo:
                await client.call("z_sendmany", ["addr", [], 1])
    finally:
        await server.close()

    assert excinfo.value.code == -6
    assert excinfo.value.message == "Insufficient funds"
    assert excinfo.value.method == "z_sendmany"


@pytest.mark.asyncio
async def test_warming_up_error_is_flagged():
    async def handler(request):
        return web.json_response({"result": None, "error": {"code": -28, "message": "Loading block index..."}})

    server = await start_server(handler)
    try:
        async with DaemonRPCClient(endpoint_for(server)) as client:
            with pytest.raises(RPCApplicationError) as excinfo:
                await client.call("getinfo")
    finally:
        await server.close()

    assert excinfo.value.warming_up


@pytest.mark.asyncio
async def test_malformed_body_is_protocol_error():
    async def handler(request):
        return web.Response(text="<html>not json</html>")

    server = await start_server(handler)
    try:
        async with DaemonRPCClient(endpoint_for(server)) as client:
            with pytest.raises(RPCProtocolError):
                await client.call("getinfo")
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_slow_daemon_times_out():
    async def handler(request):
        await asyncio.sleep(1.0)
        return web.json_response({"result": 1, "error": None})

    server = await start_server(handler)
    try:
        async with DaemonRPCClient(endpoint_for(server), timeout=0.1) as client:
            with pytest.raises(RPCTimeoutError):
                await client.call("getinfo")
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_unreachable_endpoint_is_connection_error(unused_tcp_port):
    endpoint = NodeEndpoint(host="127.0.0.1", port=unused_tcp_port)
    async with DaemonRPCClient(endpoint, timeout=2.0) as client:
        with pytest.raises(RPCConnectionError) as excinfo:
            await client.call("getinfo")
    assert not isinstance(excinfo.value, RPCTimeoutError)
    assert client.get_performance_metrics()["failures"] == 1


@pytest.mark.asyncio
async def test_api_builds_send_many_params():
    seen = {}

    async def handler(request):
        seen.update(await request.json())
        return web.json_response({"result": "opid-1", "error": None})

    server = await start_server(handler)
    try:
        api = DaemonAPI(DaemonRPCClient(endpoint_for(server)))
        opid = await api.send_many("zs1from", [{"address": "zs1to", "amount": 1.5}], 1, Decimal("0.0001"))
        await api.close()
    finally:
        await server.close()

    assert opid == "opid-1"
    assert seen["method"] == "z_sendmany"
    assert seen["params"] == ["zs1from", [{"address": "zs1to", "amount": 1.5}], 1, 0.0001]
