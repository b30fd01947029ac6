"""Tests for listener module."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import timedelta

import pytest
from conftest import wait_until_exists

from barvaz_dns.client import ControlClient, RequestRejectedError
from barvaz_dns.config import ConfigStore, ServiceConfig
from barvaz_dns.handoff import LatestSlot, StatusCell
from barvaz_dns.listener import ControlListener, listening_socket
from barvaz_dns.logging_config import PACKAGE_LOGGER
from barvaz_dns.protocol import (
    PROTOCOL_VERSION,
    AddDomainRequest,
    ConfigResponse,
    ErrorResponse,
    ForceUpdateRequest,
    GetConfigRequest,
    GetStatusRequest,
    OkResponse,
    RemoveDomainRequest,
    SetIntervalRequest,
    SetIpv6Request,
    SetLogLevelRequest,
    SetTokenRequest,
    StatusResponse,
)


@pytest.fixture
def store(tmp_path) -> ConfigStore:
    store = ConfigStore(tmp_path / "config.toml")
    store.load_or_create()
    return store


@pytest.fixture
def updates() -> LatestSlot[ServiceConfig]:
    return LatestSlot()


@pytest.fixture
def listener(socket_path, store, updates) -> ControlListener:
    return ControlListener(
        socket_path,
        store,
        updates,
        StatusCell(),
        accept_timeout=0.1,
        read_timeout=0.5,
    )


class TestHandleRequest:
    """Tests for ControlListener.handle_request."""

    @pytest.mark.asyncio
    async def test_set_token(self, listener, store, updates):
        response = await listener.handle_request(SetTokenRequest(token="abc"))

        assert response == OkResponse()
        assert store.service.token == "abc"
        assert 'token = "abc"' in store.path.read_text(encoding="utf-8")
        published = updates.take()
        assert published is not None
        assert published.token == "abc"

    @pytest.mark.asyncio
    async def test_published_copy_is_independent(self, listener, store, updates):
        await listener.handle_request(AddDomainRequest(domain="alice"))
        published = updates.take()
        published.domains.add("mallory")
        assert store.service.domains == {"alice"}

    @pytest.mark.asyncio
    async def test_add_and_remove_domain(self, listener, store):
        assert await listener.handle_request(AddDomainRequest(domain="alice")) == OkResponse()
        assert await listener.handle_request(AddDomainRequest(domain="bob")) == OkResponse()
        assert store.service.domains == {"alice", "bob"}

        assert await listener.handle_request(RemoveDomainRequest(domain="alice")) == OkResponse()
        assert store.service.domains == {"bob"}

    @pytest.mark.asyncio
    async def test_duplicate_domain(self, listener, store, updates):
        await listener.handle_request(AddDomainRequest(domain="alice"))
        updates.take()

        response = await listener.handle_request(AddDomainRequest(domain="alice"))

        assert response == ErrorResponse(message='Domain "alice" already exists')
        assert store.service.domains == {"alice"}
        assert updates.pending() is False

    @pytest.mark.asyncio
    async def test_domain_limit(self, listener, store):
        for name in ("a", "b", "c", "d", "e"):
            assert await listener.handle_request(AddDomainRequest(domain=name)) == OkResponse()

        response = await listener.handle_request(AddDomainRequest(domain="f"))

        assert isinstance(response, ErrorResponse)
        assert "Domain limit reached" in response.message
        assert len(store.service.domains) == 5

    @pytest.mark.asyncio
    async def test_limit_checked_before_duplicate(self, listener):
        for name in ("a", "b", "c", "d", "e"):
            await listener.handle_request(AddDomainRequest(domain=name))

        response = await listener.handle_request(AddDomainRequest(domain="a"))

        assert isinstance(response, ErrorResponse)
        assert "Domain limit reached" in response.message

    @pytest.mark.asyncio
    async def test_remove_missing_domain(self, listener):
        response = await listener.handle_request(RemoveDomainRequest(domain="alice"))
        assert response == ErrorResponse(message='Domain "alice" does not exist')

    @pytest.mark.asyncio
    async def test_set_interval(self, listener, store):
        response = await listener.handle_request(SetIntervalRequest(interval=timedelta(minutes=10)))

        assert response == OkResponse()
        assert store.service.interval == timedelta(minutes=10)
        assert 'interval = "10m"' in store.path.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_interval_below_minimum(self, listener, store, updates):
        updates.take()
        response = await listener.handle_request(SetIntervalRequest(interval=timedelta(seconds=3)))

        assert isinstance(response, ErrorResponse)
        assert "below the minimum of 5s" in response.message
        assert store.service.interval == timedelta(days=1)
        assert updates.pending() is False

    @pytest.mark.asyncio
    async def test_interval_at_minimum(self, listener, store):
        response = await listener.handle_request(SetIntervalRequest(interval=timedelta(seconds=5)))
        assert response == OkResponse()
        assert store.service.interval == timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_ipv6_toggle_requests_reset(self, listener, store, updates):
        store.service.reset_addresses_pending = False

        response = await listener.handle_request(SetIpv6Request(enabled=True))

        assert response == OkResponse()
        assert store.service.ipv6 is True
        published = updates.take()
        assert published.reset_addresses_pending is True
        assert store.service.reset_addresses_pending is False

    @pytest.mark.asyncio
    async def test_ipv6_unchanged_does_not_reset(self, listener, store, updates):
        store.service.ipv6 = True
        store.service.reset_addresses_pending = False

        await listener.handle_request(SetIpv6Request(enabled=True))

        assert updates.take().reset_addresses_pending is False

    @pytest.mark.asyncio
    async def test_reset_survives_overwrite(self, listener, store, updates):
        store.service.reset_addresses_pending = False
        await listener.handle_request(SetIpv6Request(enabled=True))
        await listener.handle_request(SetTokenRequest(token="abc"))

        published = updates.take()
        assert published.token == "abc"
        assert published.reset_addresses_pending is True

    @pytest.mark.asyncio
    async def test_force_update_reloads_file(self, listener, store, updates):
        store.path.write_text(
            '[service]\ntoken = "fromfile"\ndomains = ["alice"]\ninterval = "1h"\n',
            encoding="utf-8",
        )

        response = await listener.handle_request(ForceUpdateRequest())

        assert response == OkResponse()
        assert store.service.token == "fromfile"
        published = updates.take()
        assert published.domains == {"alice"}
        assert published.interval == timedelta(hours=1)
        assert published.reset_addresses_pending is True

    @pytest.mark.asyncio
    async def test_force_update_with_invalid_file(self, listener, store, updates):
        await listener.handle_request(SetTokenRequest(token="live"))
        updates.take()
        store.path.write_text("[service\n", encoding="utf-8")

        response = await listener.handle_request(ForceUpdateRequest())

        assert isinstance(response, ErrorResponse)
        assert response.message.startswith("Failed to reload configuration")
        assert store.service.token == "live"
        assert updates.pending() is False

    @pytest.mark.asyncio
    async def test_save_failure_keeps_change(self, listener, store, updates, monkeypatch):
        def fail() -> None:
            raise OSError("read-only file system")

        monkeypatch.setattr(store, "save", fail)

        response = await listener.handle_request(SetTokenRequest(token="abc"))

        assert isinstance(response, ErrorResponse)
        assert "Failed to save configuration" in response.message
        assert store.service.token == "abc"
        assert updates.take().token == "abc"

    @pytest.mark.asyncio
    async def test_set_log_level(self, listener, updates):
        updates.take()
        response = await listener.handle_request(SetLogLevelRequest(level="debug"))

        assert response == OkResponse()
        assert logging.getLogger(PACKAGE_LOGGER).level == logging.DEBUG
        assert updates.pending() is False

    @pytest.mark.asyncio
    async def test_set_invalid_log_level(self, listener):
        response = await listener.handle_request(SetLogLevelRequest(level="loud"))
        assert isinstance(response, ErrorResponse)
        assert "Invalid log level" in response.message

    @pytest.mark.asyncio
    async def test_get_config(self, listener, store):
        store.service.token = "abc"
        response = await listener.handle_request(GetConfigRequest())

        assert isinstance(response, ConfigResponse)
        assert response.config.token == "abc"
        response.config.token = "changed"
        assert store.service.token == "abc"

    @pytest.mark.asyncio
    async def test_get_status(self, listener):
        assert await listener.handle_request(GetStatusRequest()) == StatusResponse(succeeded=False)
        await listener.status.set(True)
        assert await listener.handle_request(GetStatusRequest()) == StatusResponse(succeeded=True)


class TestListeningSocket:
    """Tests for listening_socket."""

    def test_removes_socket_on_exit(self, socket_path):
        with listening_socket(socket_path):
            assert socket_path.is_socket()
            assert socket_path.stat().st_mode & 0o777 == 0o600
        assert not socket_path.exists()

    def test_replaces_stale_socket(self, socket_path):
        with listening_socket(socket_path) as sock:
            # Simulate a crash: the file stays behind once the socket is closed
            sock.close()
            with listening_socket(socket_path):
                assert socket_path.is_socket()

    def test_refuses_regular_file(self, socket_path):
        socket_path.write_text("", encoding="utf-8")
        with pytest.raises(OSError, match="not a socket"), listening_socket(socket_path):
            pass
        assert socket_path.exists()

    def test_refuses_live_socket(self, socket_path):
        with listening_socket(socket_path):
            with pytest.raises(OSError, match="already listening"), listening_socket(socket_path):
                pass
            assert socket_path.is_socket()


@contextlib.asynccontextmanager
async def serving(listener: ControlListener):
    task = asyncio.create_task(listener.serve_forever())
    try:
        await wait_until_exists(listener.endpoint)
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def exchange(path, data: bytes) -> bytes:
    reader, writer = await asyncio.open_unix_connection(str(path))
    try:
        writer.write(data)
        await writer.drain()
        return await asyncio.wait_for(reader.readline(), 2.0)
    finally:
        writer.close()
        await writer.wait_closed()


class TestServeForever:
    """Tests for the socket side of ControlListener."""

    @pytest.mark.asyncio
    async def test_client_requests(self, listener, socket_path, store):
        client = ControlClient(socket_path, timeout=2.0)
        async with serving(listener):
            await client.add_domain("alice")
            await client.set_token("abc")
            await client.set_interval(timedelta(minutes=5))
            with pytest.raises(RequestRejectedError, match="already exists"):
                await client.add_domain("alice")

            config = await client.get_config()
            assert config.domains == {"alice"}
            assert config.token == "abc"
            assert config.interval == timedelta(minutes=5)
            assert await client.get_status() is False

        assert not socket_path.exists()
        assert store.service.domains == {"alice"}

    @pytest.mark.asyncio
    async def test_incompatible_version(self, listener, socket_path, store):
        data = json.dumps(
            {"version": "0.0.1", "payload": {"kind": "set_token", "token": "abc"}},
        ).encode() + b"\n"

        async with serving(listener):
            reply = await exchange(socket_path, data)

        body = json.loads(reply)
        assert body["kind"] == "error"
        assert "Incompatible version" in body["message"]
        assert store.service.token is None

    @pytest.mark.asyncio
    async def test_incompatible_version_with_plain_payload(self, listener, socket_path):
        data = json.dumps({"version": "0.0.1", "payload": "force_update"}).encode() + b"\n"

        async with serving(listener):
            reply = await exchange(socket_path, data)

        body = json.loads(reply)
        assert body["kind"] == "error"
        assert "Incompatible version" in body["message"]

    @pytest.mark.asyncio
    async def test_invalid_payload_gets_error(self, listener, socket_path):
        data = json.dumps({"version": PROTOCOL_VERSION, "payload": {"kind": "reboot"}}).encode()

        async with serving(listener):
            reply = await exchange(socket_path, data + b"\n")

        assert json.loads(reply)["kind"] == "error"

    @pytest.mark.asyncio
    async def test_malformed_bytes_dropped(self, listener, socket_path):
        async with serving(listener):
            assert await exchange(socket_path, b"garbage\n") == b""
            # The listener keeps serving
            client = ControlClient(socket_path, timeout=2.0)
            assert await client.get_status() is False

    @pytest.mark.asyncio
    async def test_silent_client_times_out(self, listener, socket_path):
        async with serving(listener):
            reader, writer = await asyncio.open_unix_connection(str(socket_path))
            try:
                assert await asyncio.wait_for(reader.readline(), 2.0) == b""
            finally:
                writer.close()
                await writer.wait_closed()

            client = ControlClient(socket_path, timeout=2.0)
            assert await client.get_status() is False

