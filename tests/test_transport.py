"""Tests for the slixmpp connection override."""

import asyncio
import socket

import pytest

from alumchat.transport.slixmpp_transport import AlumChatXMPP


def closed_port():
    with socket.socket() as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


@pytest.fixture
def xmpp_factory():
    created = []

    def make(proxy_url=None):
        xmpp = AlumChatXMPP('me@alumchat.xyz/console', 'secret', proxy_url=proxy_url)
        xmpp._current_connection_attempt = asyncio.get_running_loop().create_future()
        failures = []
        xmpp.add_event_handler('connection_failed', failures.append)
        created.append(xmpp)
        return xmpp, failures

    yield make
    for xmpp in created:
        if xmpp._current_connection_attempt is not None:
            xmpp._current_connection_attempt.cancel()


class TestAttemptConnection:

    @pytest.mark.asyncio
    async def test_refused_connection_is_reported(self, xmpp_factory):
        xmpp, failures = xmpp_factory()
        port = closed_port()

        assert await xmpp._attempt_connection('127.0.0.1', port, False, None) is False
        assert len(failures) == 1
        assert failures[0].startswith(f"Cannot reach 127.0.0.1:{port}: ")

    @pytest.mark.asyncio
    async def test_unreachable_proxy_is_reported(self, xmpp_factory):
        xmpp, failures = xmpp_factory(proxy_url=f'socks5://127.0.0.1:{closed_port()}')

        assert await xmpp._attempt_connection('alumchat.xyz', 5222, False, None) is False
        assert len(failures) == 1
        assert failures[0].startswith("Cannot reach alumchat.xyz:5222 via proxy: ")

    @pytest.mark.asyncio
    async def test_cancelled_attempt_does_not_connect(self, xmpp_factory):
        xmpp, failures = xmpp_factory()
        xmpp._current_connection_attempt.cancel()
        xmpp._current_connection_attempt = None

        assert await xmpp._attempt_connection('127.0.0.1', closed_port(), False, None) is False
        assert failures == []
