"""
Transport contract.

The client core only ever talks to this interface: connect, send a stanza,
receive the inbound stanza stream, stop. TLS, SASL and XML framing live in
the concrete transports.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from alumchat.stanza import Stanza

StanzaHandler = Callable[[Stanza], None]
CloseHandler = Callable[[Optional[str]], None]


@dataclass
class Credentials:
    """Account credentials for one connection attempt."""
    username: str
    password: str = field(repr=False)
    domain: str
    resource: Optional[str] = None

    @property
    def jid(self) -> str:
        return f"{self.username}@{self.domain}"


class Transport(ABC):
    """
    One XMPP stream.

    connect() returns the handle of the stream (the bound full JID for
    authenticated streams, the server domain for pre-auth ones). Inbound
    stanzas are delivered synchronously, in arrival order, to every handler
    registered with on_stanza(). on_close() handlers fire once when the
    stream ends for any reason other than stop().
    """

    def __init__(self):
        self._stanza_handlers: List[StanzaHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self.logger = logging.getLogger(f'alumchat.transport.{type(self).__name__}')

    @abstractmethod
    async def connect(self, credentials: Credentials) -> str:
        """Open the stream. Raises TransportAuthError on SASL failure."""

    @abstractmethod
    async def send(self, stanza: Stanza) -> None:
        """Write one stanza. Raises SendFailed when the stream is not writable."""

    @abstractmethod
    async def stop(self) -> None:
        """Close the stream. Safe to call more than once."""

    def on_stanza(self, handler: StanzaHandler) -> None:
        self._stanza_handlers.append(handler)

    def remove_stanza_handler(self, handler: StanzaHandler) -> None:
        if handler in self._stanza_handlers:
            self._stanza_handlers.remove(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    def _deliver(self, stanza: Stanza) -> None:
        for handler in list(self._stanza_handlers):
            try:
                handler(stanza)
            except Exception as e:
                self.logger.error(f"Stanza handler failed: {e}")

    def _closed(self, reason: Optional[str] = None) -> None:
        handlers, self._close_handlers = self._close_handlers, []
        for handler in handlers:
            try:
                handler(reason)
            except Exception as e:
                self.logger.error(f"Close handler failed: {e}")
