"""Shared fixtures: an in-memory transport and ready-made clients."""

import asyncio
from typing import Callable, Iterable, List, Optional

import pytest
import pytest_asyncio

from alumchat.client import AlumChat
from alumchat.config import ClientSettings
from alumchat.errors import SendFailed, TransportAuthError
from alumchat.stanza import Stanza, element
from alumchat.transport.base import Credentials, Transport

DOMAIN = 'alumchat.xyz'
CONFERENCE = 'conference.alumchat.xyz'
OWN_JID = f'me@{DOMAIN}/console'

Responder = Callable[[Stanza], Optional[Iterable[Stanza]]]


def auto_result(stanza: Stanza) -> List[Stanza]:
    """Answer every iq get/set with an empty result from its addressee."""
    if stanza.name == 'iq' and stanza.type in ('get', 'set'):
        return [element('iq', {'type': 'result', 'id': stanza.id, 'from': stanza.to})]
    return []


class FakeTransport(Transport):
    """
    Transport that records outbound stanzas and answers through a responder.

    Replies are delivered on the next loop iteration, like a real socket.
    """

    def __init__(self, handle: str = OWN_JID, auth_error: Optional[str] = None,
                 responder: Optional[Responder] = None):
        super().__init__()
        self.handle = handle
        self.auth_error = auth_error
        self.responder = responder or auto_result
        self.fail_when: Optional[Callable[[Stanza], bool]] = None
        self.sent: List[Stanza] = []
        self.credentials: Optional[Credentials] = None
        self.authenticated: Optional[bool] = None
        self.connected = False
        self.stopped = False

    async def connect(self, credentials: Credentials) -> str:
        self.credentials = credentials
        if self.auth_error:
            raise TransportAuthError(self.auth_error)
        self.connected = True
        return self.handle

    async def send(self, stanza: Stanza) -> None:
        if not self.connected:
            raise SendFailed("not connected")
        if self.fail_when is not None and self.fail_when(stanza):
            raise SendFailed(f"refused <{stanza.name}>")
        self.sent.append(stanza)
        loop = asyncio.get_running_loop()
        for reply in self.responder(stanza) or ():
            loop.call_soon(self._deliver, reply)

    async def stop(self) -> None:
        self.connected = False
        self.stopped = True

    def push(self, stanza: Stanza) -> None:
        """Deliver an inbound stanza immediately."""
        self._deliver(stanza)

    def drop(self, reason: str = 'connection reset') -> None:
        self.connected = False
        self._closed(reason)

    def sent_named(self, name: str) -> List[Stanza]:
        return [s for s in self.sent if s.name == name]


class FakeTransportFactory:
    """transport_factory for AlumChat; options apply to the next transports built."""

    def __init__(self):
        self.created: List[FakeTransport] = []
        self.options = {}

    def __call__(self, authenticated: bool) -> FakeTransport:
        transport = FakeTransport(**self.options)
        transport.authenticated = authenticated
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def settings(tmp_path):
    return ClientSettings(
        domain=DOMAIN,
        host=DOMAIN,
        conference_domain=CONFERENCE,
        probe_timeout=0.2,
        settle_delay=0.01,
        join_timeout=0.5,
        download_dir=tmp_path / 'downloads',
    )


@pytest.fixture
def transports():
    return FakeTransportFactory()


@pytest.fixture
def client(settings, transports):
    return AlumChat(settings, transport_factory=transports)


@pytest_asyncio.fixture
async def online(client, transports):
    """Client logged in as me@alumchat.xyz; the transport's sent log starts empty."""
    await client.login('me', 'secret')
    transports.last.sent.clear()
    return client
