"""
Pre-authentication stream for in-band registration (XEP-0077).

Uses raw TCP/TLS sockets and an XMLPullParser instead of ClientXMPP, whose
connect sequence always attempts SASL. This is a minimal XMPP stream: stream
header, STARTTLS, then stanza exchange until stop().
"""

import asyncio
import ssl
import socket
import xml.etree.ElementTree as ET
from typing import List, Optional

from python_socks.async_.asyncio import Proxy

from alumchat.errors import SendFailed
from alumchat.stanza import Stanza
from alumchat.transport.base import Credentials, Transport
from alumchat.transport.xml import from_element, serialize

NS_TLS = 'urn:ietf:params:xml:ns:xmpp-tls'
NS_FEATURE_REGISTER = 'http://jabber.org/features/iq-register'


class RegistrationStream(Transport):
    """
    Unauthenticated XMPP stream, used only to create accounts.

    Args:
        host: Server host (None = the credentials' domain)
        port: Server port
        proxy_url: Optional 'socks5://...' or 'http://...' proxy URL
        timeout: Connect / negotiation timeout in seconds
        verify_certificate: Verify the server certificate after STARTTLS
    """

    def __init__(self, host: Optional[str] = None, port: int = 5222,
                 proxy_url: Optional[str] = None, timeout: float = 15.0,
                 verify_certificate: bool = True):
        super().__init__()
        self.host = host
        self.port = port
        self.proxy_url = proxy_url
        self.timeout = timeout
        self.verify_certificate = verify_certificate
        self.server: Optional[str] = None
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.stream_id: Optional[str] = None
        self.features: Optional[ET.Element] = None
        self._parser: Optional[ET.XMLPullParser] = None
        self._depth = 0
        self._backlog: List[ET.Element] = []
        self._reader_task: Optional[asyncio.Task] = None
        self._stream_ended = False
        self._stopping = False

    async def connect(self, credentials: Credentials) -> str:
        self.server = credentials.domain
        host = self.host or self.server
        self.logger.info(f"Connecting to {host}:{self.port} (for {self.server})...")

        if self.proxy_url:
            sock = await self._connect_via_proxy(host, self.port)
            self.reader, self.writer = await asyncio.open_connection(sock=sock)
        else:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(host, self.port),
                timeout=self.timeout
            )
        self.logger.debug("TCP connection established")

        try:
            async with asyncio.timeout(self.timeout):
                await self._open_stream()
                self.features = await self._read_stream_features()

                if self.features.find(f'{{{NS_TLS}}}starttls') is not None:
                    await self._start_tls()
                    await self._open_stream()
                    self.features = await self._read_stream_features()
        except BaseException:
            await self.stop()
            raise

        if self.features.find(f'{{{NS_FEATURE_REGISTER}}}register') is None:
            self.logger.debug(f"{self.server} does not advertise in-band registration")

        self._reader_task = asyncio.create_task(self._read_loop())
        return self.server

    async def send(self, stanza: Stanza) -> None:
        if self.writer is None or self._stopping:
            raise SendFailed(f"Registration stream not connected, cannot send <{stanza.name}>")
        try:
            self.writer.write(serialize(stanza).encode('utf-8'))
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise SendFailed(f"Failed to send <{stanza.name}>: {e}") from e

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        if self._reader_task is not None:
            self._reader_task.cancel()
            self._reader_task = None
        if self.writer:
            try:
                self.logger.info(f"Disconnecting from {self.server}")
                self.writer.write(b'</stream:stream>')
                await self.writer.drain()
                self.writer.close()
                await self.writer.wait_closed()
            except (ConnectionError, OSError, ssl.SSLError) as e:
                self.logger.debug(f"Disconnect error (ignored): {e}")
        self.reader = None
        self.writer = None
        self.stream_id = None

    # ========================================================================
    # Stream negotiation
    # ========================================================================

    async def _open_stream(self):
        """Send the stream header and reset the parser (stream restart)."""
        self._parser = ET.XMLPullParser(('start', 'end'))
        self._depth = 0
        self._backlog = []
        self._stream_ended = False
        header = (
            f"<?xml version='1.0'?>"
            f"<stream:stream to='{self.server}' "
            f"xmlns='jabber:client' "
            f"xmlns:stream='http://etherx.jabber.org/streams' "
            f"version='1.0'>"
        )
        self.writer.write(header.encode('utf-8'))
        await self.writer.drain()
        self.logger.debug(f"Sent stream header to {self.server}")

    async def _next_element(self) -> ET.Element:
        """Next complete top-level element of the stream."""
        while not self._backlog:
            chunk = await self.reader.read(4096)
            if not chunk:
                raise ConnectionError("Connection closed during stream negotiation")
            self._backlog.extend(self._feed(chunk))
        return self._backlog.pop(0)

    def _feed(self, chunk: bytes) -> List[ET.Element]:
        complete = []
        self._parser.feed(chunk)
        for event, elem in self._parser.read_events():
            if event == 'start':
                self._depth += 1
                if self._depth == 1:
                    self.stream_id = elem.get('id')
            else:
                self._depth -= 1
                if self._depth == 1:
                    complete.append(elem)
                elif self._depth == 0:
                    self._stream_ended = True
        return complete

    async def _read_stream_features(self) -> ET.Element:
        while True:
            elem = await self._next_element()
            if elem.tag.endswith('}features'):
                self.logger.debug("Received stream features")
                return elem
            if elem.tag.endswith('}error'):
                raise ConnectionError(f"Stream error during negotiation: {ET.tostring(elem, 'unicode')}")

    async def _start_tls(self):
        """Upgrade connection to TLS."""
        self.writer.write(f'<starttls xmlns="{NS_TLS}"/>'.encode('utf-8'))
        await self.writer.drain()

        answer = await self._next_element()
        if not answer.tag.endswith('}proceed'):
            raise ConnectionError("Server refused STARTTLS")
        self.logger.debug("Received STARTTLS proceed")

        transport = self.writer.transport
        protocol = transport.get_protocol()
        loop = asyncio.get_running_loop()

        ssl_context = ssl.create_default_context()
        if not self.verify_certificate:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        new_transport = await loop.start_tls(
            transport, protocol, ssl_context,
            server_side=False,
            server_hostname=self.server
        )

        # Update both reader and writer transports for TLS
        self.writer._transport = new_transport
        self.reader._transport = new_transport
        self.logger.debug("TLS handshake complete")

    # ========================================================================
    # Inbound stanzas
    # ========================================================================

    async def _read_loop(self):
        for elem in self._backlog:
            self._deliver(from_element(elem))
        self._backlog = []
        reason = None
        try:
            while not self._stream_ended:
                chunk = await self.reader.read(4096)
                if not chunk:
                    reason = "connection closed by server"
                    break
                for elem in self._feed(chunk):
                    self._deliver(from_element(elem))
        except (ConnectionError, OSError, ET.ParseError) as e:
            reason = str(e)
            self.logger.error(f"Registration stream read failed: {e}")
        if not self._stopping:
            self._closed(reason or "stream closed by server")

    async def _connect_via_proxy(self, dest_host: str, dest_port: int) -> socket.socket:
        """Connect to destination through the proxy and return the socket."""
        self.logger.debug(f"Connecting to {dest_host}:{dest_port} via proxy...")
        proxy = Proxy.from_url(self.proxy_url)
        sock = await asyncio.wait_for(
            proxy.connect(dest_host=dest_host, dest_port=dest_port),
            timeout=self.timeout
        )
        self.logger.debug(f"Proxy tunnel established to {dest_host}:{dest_port}")
        return sock
