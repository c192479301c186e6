"""
Authenticated transport backed by slixmpp.

slixmpp handles TCP, STARTTLS, SASL, resource binding and keepalive; this
module bridges its stanza objects to immutable Stanza values and back. The
client core installs a single catch-all handler through on_stanza().
"""

import asyncio
import socket as socket_module
from typing import Iterable, Optional

from python_socks import ProxyError
from python_socks.async_.asyncio import Proxy
from slixmpp import ClientXMPP
from slixmpp.stanza import StreamError
from slixmpp.xmlstream import StanzaBase
from slixmpp.xmlstream.handler import Callback
from slixmpp.xmlstream.matcher.base import MatcherBase

from alumchat.errors import SendFailed, TransportAuthError
from alumchat.stanza import NS_CLIENT, NS_IBB, NS_SI, Stanza
from alumchat.transport.base import Credentials, Transport
from alumchat.transport.xml import from_element, to_element


class _InboundMatcher(MatcherBase):
    """
    Selects what the client core sees: every message and presence, every iq
    result/error, and iq requests whose payload namespace is in criteria.
    Other iq requests stay with slixmpp's own plugins (ping, disco, roster push).
    """

    def match(self, stanza) -> bool:
        tag = stanza.xml.tag
        if tag in (f'{{{NS_CLIENT}}}message', f'{{{NS_CLIENT}}}presence'):
            return True
        if tag != f'{{{NS_CLIENT}}}iq':
            return False
        if stanza.xml.get('type') in ('result', 'error'):
            return True
        return any(child.tag.startswith(f'{{{ns}}}')
                   for child in stanza.xml for ns in self._criteria)


class AlumChatXMPP(ClientXMPP):
    """ClientXMPP with optional proxy tunneling and no automatic subscription handling."""

    def __init__(self, jid: str, password: str, sasl_mech: Optional[str] = None,
                 proxy_url: Optional[str] = None):
        super().__init__(jid, password, sasl_mech=sasl_mech)
        # The application answers subscription requests itself
        self.auto_authorize = None
        self.auto_subscribe = None
        self.proxy_url = proxy_url

        self.register_plugin('xep_0030')  # Service Discovery
        self.register_plugin('xep_0199')  # XMPP Ping

    async def _attempt_connection(self, host: str, port: int, tls: bool,
                                  server_hostname: Optional[str]) -> bool:
        """
        Open the stream's TCP connection, through proxy_url when one is set.

        Failures are reported as 'connection_failed' events so slixmpp's
        reconnect loop and SlixmppTransport.connect() see them.
        """
        self.event_when_connected = "connected"
        self._connect_loop_wait += 1
        if self._current_connection_attempt is None:
            return False

        tls_args = {
            'ssl': self.get_ssl_context() if tls else None,
            'server_hostname': server_hostname if tls else None,
        }
        try:
            if self.proxy_url:
                tunnel = await Proxy.from_url(self.proxy_url).connect(dest_host=host, dest_port=port)
                await self.loop.create_connection(lambda: self, sock=tunnel, **tls_args)
            else:
                await self.loop.create_connection(lambda: self, host, port, **tls_args)
        except socket_module.gaierror as e:
            self.event('connection_failed', f"Cannot resolve {host}: {e}")
            return False
        except (ProxyError, OSError) as e:
            via = " via proxy" if self.proxy_url else ""
            self.event('connection_failed', f"Cannot reach {host}:{port}{via}: {e}")
            return False

        self._connect_loop_wait = 0
        return True


class SlixmppTransport(Transport):
    """
    Transport for authenticated sessions.

    Args:
        host: Server host to connect to (None = SRV lookup on the JID domain)
        port: Server port
        resource: Resource to request at bind time (None = server assigned)
        sasl_mech: Force a SASL mechanism (None = slixmpp's choice)
        proxy_url: Optional 'socks5://...' or 'http://...' proxy URL
        connect_timeout: Seconds to wait for session_start
        claimed_namespaces: iq request payload namespaces delivered to the core
    """

    def __init__(self, host: Optional[str] = None, port: int = 5222,
                 resource: Optional[str] = None, sasl_mech: Optional[str] = None,
                 proxy_url: Optional[str] = None, connect_timeout: float = 15.0,
                 claimed_namespaces: Iterable[str] = (NS_SI, NS_IBB)):
        super().__init__()
        self.host = host
        self.port = port
        self.resource = resource
        self.sasl_mech = sasl_mech
        self.proxy_url = proxy_url
        self.connect_timeout = connect_timeout
        self.claimed_namespaces = tuple(claimed_namespaces)
        self.xmpp: Optional[AlumChatXMPP] = None
        self._stopping = False
        self._connected = False

    async def connect(self, credentials: Credentials) -> str:
        jid = credentials.jid
        resource = credentials.resource or self.resource
        if resource:
            jid = f"{jid}/{resource}"

        self.xmpp = AlumChatXMPP(jid, credentials.password,
                                 sasl_mech=self.sasl_mech, proxy_url=self.proxy_url)
        self.xmpp.register_handler(Callback(
            'AlumChat Inbound',
            _InboundMatcher(self.claimed_namespaces),
            self._on_inbound,
        ))

        loop = asyncio.get_running_loop()
        outcome = loop.create_future()
        last_failure = {'condition': 'not-authorized', 'text': None}

        def on_session_start(event):
            if not outcome.done():
                outcome.set_result(self.xmpp.boundjid.full)

        def on_failed_auth(failure):
            if failure is not None:
                last_failure['condition'] = failure['condition'] or 'not-authorized'
                last_failure['text'] = failure['text'] or None
            self.logger.warning(f"SASL failure for {credentials.jid}: {last_failure['condition']}")

        def on_failed_all_auth(event):
            if not outcome.done():
                outcome.set_exception(TransportAuthError(last_failure['condition'], last_failure['text']))

        def on_connection_failed(error):
            if not outcome.done():
                outcome.set_exception(ConnectionError(f"Connection failed: {error}"))

        self.xmpp.add_event_handler('session_start', on_session_start)
        self.xmpp.add_event_handler('failed_auth', on_failed_auth)
        self.xmpp.add_event_handler('failed_all_auth', on_failed_all_auth)
        self.xmpp.add_event_handler('connection_failed', on_connection_failed)
        self.xmpp.add_event_handler('stream_error', self._on_stream_error)
        self.xmpp.add_event_handler('disconnected', self._on_disconnected)

        self.logger.info(f"Connecting as {jid} to {self.host or credentials.domain}:{self.port}")
        if self.host:
            self.xmpp.connect(host=self.host, port=self.port)
        else:
            self.xmpp.connect()

        try:
            handle = await asyncio.wait_for(outcome, timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self.xmpp.disconnect()
            raise ConnectionError(f"No session within {self.connect_timeout}s")
        except (TransportAuthError, ConnectionError):
            self.xmpp.disconnect()
            raise
        finally:
            self.xmpp.del_event_handler('session_start', on_session_start)
            self.xmpp.del_event_handler('failed_auth', on_failed_auth)
            self.xmpp.del_event_handler('failed_all_auth', on_failed_all_auth)
            self.xmpp.del_event_handler('connection_failed', on_connection_failed)

        self._connected = True
        self.logger.info(f"Session started as {handle}")
        return handle

    async def send(self, stanza: Stanza) -> None:
        if self.xmpp is None or not self._connected:
            raise SendFailed(f"Stream not connected, cannot send <{stanza.name}>")
        try:
            self.xmpp.send(StanzaBase(self.xmpp, xml=to_element(stanza)))
        except Exception as e:
            raise SendFailed(f"Failed to send <{stanza.name}>: {e}") from e

    async def stop(self) -> None:
        if self.xmpp is None or self._stopping:
            return
        self._stopping = True
        self._connected = False
        try:
            await self.xmpp.disconnect(wait=2.0)
        except Exception as e:
            self.logger.debug(f"Disconnect error (ignored): {e}")
        self.xmpp.remove_handler('AlumChat Inbound')

    def _on_inbound(self, stanza) -> None:
        self._deliver(from_element(stanza.xml))

    def _on_stream_error(self, error: StreamError) -> None:
        self.logger.warning(f"Stream error: {error['condition']} {error['text']}")
        self._deliver(from_element(error.xml))

    def _on_disconnected(self, event) -> None:
        was_connected = self._connected
        self._connected = False
        if was_connected and not self._stopping:
            self.logger.warning("Disconnected from XMPP server")
            self._closed(str(event) if event else None)
