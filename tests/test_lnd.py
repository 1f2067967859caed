"""End-to-end tests for LndClient against mock LND REST responses."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import ChunkedStream
from simple_lnd.exceptions import (
    CredentialError,
    MalformedMessageError,
    RequestAbortedError,
    SessionDestroyedError,
    TransportError,
    UnexpectedStatusError,
)
from simple_lnd.lnd import ConfigState, LndClient


def make_client(handler, host: str = "127.0.0.1", port: int = 8080, **kwargs) -> LndClient:
    return LndClient(
        host,
        port,
        macaroon="deadbeef",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def chunked(*chunks: bytes, status: int = 200, hang: bool = False) -> httpx.Response:
    return httpx.Response(status, stream=ChunkedStream(list(chunks), hang=hang))


class TestRequestEngine:
    @pytest.mark.asyncio
    async def test_stream_yields_records_split_mid_line(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return chunked(b'{"a":1}\n{"b"', b":2}\n")

        client = make_client(handler)
        updates = [u async for u in client.send_payment("lnbc10u1ptest")]

        assert updates == [{"a": 1}, {"b": 2}]
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_collect_last_returns_final_record(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return chunked(b'{"a":1}\n{"b"', b":2}\n")

        client = make_client(handler)
        assert await client.get_info() == {"b": 2}

    @pytest.mark.asyncio
    async def test_single_record_without_trailing_newline(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"alias": "mynode"})

        client = make_client(handler)
        assert await client.get_info() == {"alias": "mynode"}

    @pytest.mark.asyncio
    async def test_empty_body_collects_none(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200)

        client = make_client(handler)
        assert await client.list_channels() is None

    @pytest.mark.asyncio
    async def test_status_429_fails_without_retry(self):
        calls = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(429, text="slow down")

        client = make_client(handler)
        with pytest.raises(UnexpectedStatusError) as exc:
            await client.get_info()

        assert exc.value.status_code == 429
        assert exc.value.body == "slow down"
        assert len(calls) == 1
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_malformed_record_fails_call(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return chunked(b'{"a":1}\nnot json\n')

        client = make_client(handler)
        with pytest.raises(MalformedMessageError) as exc:
            await client.get_info()

        assert exc.value.record == "not json"
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_transport_error(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(TransportError, match="connection refused"):
            await client.get_info()
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_invalid_utf8_record_is_malformed(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return chunked(b'{"alias":"\xff"}\n')

        client = make_client(handler)
        with pytest.raises(MalformedMessageError) as exc:
            await client.get_info()

        assert exc.value.record == '{"alias":"\ufffd"}'
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_sends_macaroon_and_body(self):
        seen: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"r_hash": "abc"})

        client = make_client(handler)
        await client.add_invoice(value=100, memo="coffee")

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/invoices"
        assert request.headers["grpc-metadata-macaroon"] == "deadbeef"
        assert request.headers["connection"] == "Keep-Alive"
        assert json.loads(request.content) == {"memo": "coffee", "value": "100"}

    @pytest.mark.asyncio
    async def test_query_parameters(self):
        seen: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        client = make_client(handler)
        await client.list_invoices(num_max_invoices=10, pending_only=True)
        await client.list_channels(active_only=False)
        await client.decode_pay_req("lnbc1abc")

        assert seen[0].url.params["num_max_invoices"] == "10"
        assert seen[0].url.params["pending_only"] == "true"
        assert seen[0].url.params["reversed"] == "false"
        assert seen[1].url.params["active_only"] == "false"
        assert seen[2].url.path == "/v1/payreq/lnbc1abc"

    @pytest.mark.asyncio
    async def test_heartbeat_streams_have_no_read_timeout(self):
        seen: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return chunked(b'{"result":{"state":"OPEN"}}\n')

        client = make_client(handler, request_timeout=5)
        await client.get_info()
        events = [e async for e in client.subscribe_invoices(add_index=3)]

        assert events == [{"result": {"state": "OPEN"}}]
        assert seen[0].extensions["timeout"]["read"] == 5
        assert seen[1].extensions["timeout"]["read"] is None
        assert seen[1].url.params["add_index"] == "3"

    @pytest.mark.asyncio
    async def test_transactions_feed(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/transactions/subscribe"
            return chunked(b'{"tx_hash":"aa"}\n', b'{"tx_hash":"bb"}\n')

        client = make_client(handler)
        txs = [tx["tx_hash"] async for tx in client.subscribe_transactions()]
        assert txs == ["aa", "bb"]


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy_aborts_open_stream(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return chunked(b'{"a":1}\n', hang=True)

        client = make_client(handler)
        events = client.subscribe_invoices()
        assert await events.__anext__() == {"a": 1}
        assert len(client.requests) == 1

        client.destroy()

        with pytest.raises(RequestAbortedError):
            await asyncio.wait_for(events.__anext__(), 1)
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_destroy_aborts_waiting_call(self):
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.Event().wait()
            return httpx.Response(200)

        client = make_client(handler)
        task = asyncio.create_task(client.get_info())
        await started.wait()

        client.destroy()

        with pytest.raises(RequestAbortedError):
            await asyncio.wait_for(task, 1)

    @pytest.mark.asyncio
    async def test_calls_after_destroy_fail_fast(self):
        calls = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        client = make_client(handler)
        client.destroy()
        client.destroy()

        assert client.destroyed
        with pytest.raises(SessionDestroyedError):
            await client.get_info()
        with pytest.raises(SessionDestroyedError):
            client.subscribe_invoices()
        with pytest.raises(SessionDestroyedError):
            await client.open_invoice_stream()
        assert calls == []

    @pytest.mark.asyncio
    async def test_async_context_manager_destroys(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ok": True})

        async with make_client(handler) as client:
            assert await client.get_info() == {"ok": True}
        assert client.destroyed

    @pytest.mark.asyncio
    async def test_leaving_stream_early_unregisters(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return chunked(b'{"a":1}\n{"a":2}\n', hang=True)

        client = make_client(handler)
        async with client.subscribe_invoices() as events:
            async for event in events:
                assert len(client.requests) == 1
                break

        assert event == {"a": 1}
        assert len(client.requests) == 0

    @pytest.mark.asyncio
    async def test_aclose_unregisters_payment_stream(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return chunked(b'{"status":"IN_FLIGHT"}\n', hang=True)

        client = make_client(handler)
        updates = client.send_payment("lnbc10u1ptest")
        assert await updates.__anext__() == {"status": "IN_FLIGHT"}

        await updates.aclose()

        assert len(client.requests) == 0
        with pytest.raises(StopAsyncIteration):
            await updates.__anext__()

    @pytest.mark.asyncio
    async def test_destroy_during_configuration(self):
        started = asyncio.Event()
        paths: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            started.set()
            await asyncio.Event().wait()
            return httpx.Response(200)

        client = make_client(handler, port=10009)
        task = asyncio.create_task(client.list_channels())
        await started.wait()

        client.destroy()

        with pytest.raises(SessionDestroyedError):
            await asyncio.wait_for(task, 1)
        assert paths == ["/v1/getinfo"]
        assert client.config_state is ConfigState.CONFIGURED
        assert len(client.requests) == 0


class TestAutoConfigure:
    @pytest.mark.asyncio
    async def test_port_check_runs_once_for_concurrent_calls(self):
        checks: list[int] = []
        channel_ports: list[int] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/getinfo":
                checks.append(request.url.port)
                if request.url.port == 10009:
                    raise httpx.ConnectError("wrong protocol", request=request)
                return httpx.Response(200, json={"alias": "node"})
            channel_ports.append(request.url.port)
            return httpx.Response(200, json={"channels": []})

        client = make_client(handler, port=10009)
        results = await asyncio.gather(*(client.list_channels() for _ in range(10)))

        assert results == [{"channels": []}] * 10
        assert checks == [10009, 8080]
        assert channel_ports == [8080] * 10
        assert client.port == 8080
        assert client.config_state is ConfigState.CONFIGURED

    @pytest.mark.asyncio
    async def test_ambiguous_port_kept_when_it_answers(self):
        checks: list[int] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            checks.append(request.url.port)
            return httpx.Response(200, json={})

        client = make_client(handler, port=10009)
        await client.get_info()

        assert client.port == 10009
        assert checks == [10009, 10009]

    @pytest.mark.asyncio
    async def test_reverts_when_both_ports_fail(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        client = make_client(handler, port=10009)
        with pytest.raises(TransportError):
            await client.get_info()

        assert client.port == 10009
        assert client.config_state is ConfigState.CONFIGURED

    @pytest.mark.asyncio
    async def test_undecodable_reply_counts_as_failed_check(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.port == 10009:
                return chunked(b"\xff\n")
            return httpx.Response(200, json={"channels": []})

        client = make_client(handler, port=10009)
        assert await client.list_channels() == {"channels": []}
        assert client.port == 8080

    @pytest.mark.asyncio
    async def test_other_ports_skip_port_check(self):
        paths: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={})

        client = make_client(handler, port=8080)
        await client.list_channels()
        assert paths == ["/v1/channels"]


class TestConstruction:
    def test_requires_macaroon(self):
        with pytest.raises(CredentialError, match="macaroon is required"):
            LndClient("127.0.0.1")

    def test_host_with_port(self):
        client = LndClient("mynode.example.com:10009", macaroon=b"\xde\xad")
        assert client.host == "mynode.example.com"
        assert client.port == 10009
        assert client.macaroon == "dead"
        assert client.verify is True

    def test_localhost_skips_verification_by_default(self):
        client = LndClient("localhost", macaroon="deadbeef")
        assert client.port == 8080
        assert client.verify is False
        assert LndClient("localhost", macaroon="deadbeef", verify=True).verify is True

    def test_lndconnect(self):
        client = LndClient(lndconnect="lndconnect://node.example.com:10009?macaroon=3q2-7w")
        assert client.host == "node.example.com"
        assert client.port == 10009
        assert client.macaroon == "deadbeef"

    def test_from_env(self, monkeypatch):
        monkeypatch.delenv("LNDCONNECT_URI", raising=False)
        monkeypatch.delenv("LND_TLS_CERT_PATH", raising=False)
        monkeypatch.setenv("LND_REST_HOST", "https://mynode:8081")
        monkeypatch.setenv("LND_MACAROON_HEX", "aabbcc")
        client = LndClient.from_env()
        assert client.host == "mynode"
        assert client.port == 8081
        assert client.macaroon == "aabbcc"

    def test_from_env_ignores_placeholders(self, monkeypatch):
        monkeypatch.setenv("LNDCONNECT_URI", "${LNDCONNECT_URI}")
        monkeypatch.setenv("LND_REST_HOST", "${LND_REST_HOST}")
        monkeypatch.setenv("LND_MACAROON_HEX", "aabbcc")
        with pytest.raises(CredentialError):
            LndClient.from_env()


class TestDerive:
    @pytest.mark.asyncio
    async def test_derived_session_has_independent_requests(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ok": True})

        parent = make_client(handler, port=10009)
        await parent.get_info()
        child = parent.derive()

        assert child.macaroon == parent.macaroon
        assert child.port == parent.port
        assert child.requests is not parent.requests
        assert child.config_state is ConfigState.CONFIGURED

        parent.destroy()
        assert await child.get_info() == {"ok": True}
        assert not child.destroyed
