"""
Session Manager: account registration, login, logout, account deletion.

A client owns at most one Session. Every operation other than register()
and login() goes through _require_session(), which raises NotConnected
when there is none.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

from alumchat.dispatcher import StanzaDispatcher, is_stream_error
from alumchat.errors import (
    AlumChatError, AuthenticationFailed, ConnectionConflict, NotConnected,
    RegistrationConflict, RemovalFailed, StanzaError, TransportAuthError,
)
from alumchat.stanza import (
    NS_STREAMS, Stanza, presence, register_account, remove_account,
)
from alumchat.transport.base import Credentials, Transport

# authenticated=True -> transport for login, False -> pre-auth registration stream
TransportFactory = Callable[[bool], Transport]


@dataclass
class Session:
    """The live connection state of one logged-in account."""
    username: str
    password: str = field(repr=False)
    domain: str
    handle: Optional[str] = None
    transport: Optional[Transport] = field(default=None, repr=False)
    dispatcher: Optional[StanzaDispatcher] = field(default=None, repr=False)

    @property
    def jid(self) -> str:
        return f"{self.username}@{self.domain}"

    @property
    def active(self) -> bool:
        return self.handle is not None

    def clear(self) -> None:
        self.password = ''
        self.handle = None
        self.transport = None
        self.dispatcher = None


def is_account_removed_error(stanza: Stanza) -> bool:
    """
    Stream error a server sends right after removing the account.

    XEP-0077 servers send <not-authorized/>; some send <conflict/> with
    text "User removed".
    """
    if not is_stream_error(stanza):
        return False
    condition = None
    text = ''
    for child in stanza.children:
        if child.name == 'text':
            text = (child.text or '').lower()
        elif child.xmlns == NS_STREAMS and condition is None:
            condition = child.name
    if condition == 'not-authorized':
        return True
    return condition == 'conflict' and 'user removed' in text


class SessionMixin:
    """
    Mixin providing the session lifecycle.

    Requirements (provided by AlumChat):
    - self.settings: ClientSettings
    - self.transport_factory: TransportFactory
    - self.session: Optional[Session]
    - self._install_routes(dispatcher): wires dispatcher routes to the engines
    - self._is_joined(room): whether a room has been joined
    - self._reset_session_state(): clears per-session caches
    - self.logger: Logger instance
    """

    session: Optional[Session]

    def _require_session(self) -> Session:
        if self.session is None or not self.session.active:
            raise NotConnected("Not logged in")
        return self.session

    async def _send(self, stanza: Stanza) -> None:
        await self._require_session().dispatcher.send(stanza)

    async def _request(self, stanza: Stanza, timeout: Optional[float] = None) -> Stanza:
        return await self._require_session().dispatcher.request(stanza, timeout=timeout)

    def is_connected(self) -> bool:
        return self.session is not None and self.session.active

    # ========================================================================
    # Registration
    # ========================================================================

    async def register(self, username: str, password: str, email: Optional[str] = None) -> None:
        """
        Create an account with in-band registration.

        The registration stream is always closed afterwards; call login()
        to use the new account.

        Raises:
            ConnectionConflict: A session is already active
            RegistrationConflict: The username is taken
            StanzaError: Any other registration error from the server
        """
        if self.session is not None:
            raise ConnectionConflict(f"Already logged in as {self.session.jid}")

        domain = self.settings.domain
        email = email or f"{username}@{domain}"
        transport = self.transport_factory(False)
        dispatcher = StanzaDispatcher(local_jid=domain)
        try:
            handle = await transport.connect(Credentials(username, password, domain))
            dispatcher.local_jid = handle
            dispatcher.attach(transport)
            await dispatcher.request(register_account(username, password, email))
            self.logger.info(f"Account {username}@{domain} registered")
        except StanzaError as e:
            if e.condition == 'conflict':
                self.logger.warning(f"Registration failed: {username}@{domain} already exists")
                raise RegistrationConflict(f"User {username}@{domain} already exists") from e
            self.logger.error(f"Registration failed: {e}")
            raise
        finally:
            dispatcher.close("Registration finished")
            await transport.stop()

    # ========================================================================
    # Login / logout
    # ========================================================================

    async def login(self, username: str, password: str) -> Session:
        """
        Authenticate and start a session.

        Raises:
            ConnectionConflict: A session is already active
            AuthenticationFailed: Server answered not-authorized
        """
        if self.session is not None:
            raise ConnectionConflict(f"Already logged in as {self.session.jid}")

        settings = self.settings
        credentials = Credentials(username, password, settings.domain, settings.resource)
        transport = self.transport_factory(True)
        try:
            handle = await transport.connect(credentials)
        except TransportAuthError as e:
            await transport.stop()
            self.logger.error(f"XMPP authentication failed for {credentials.jid}: {e.condition}")
            if e.condition == 'not-authorized':
                raise AuthenticationFailed(f"Invalid credentials for {credentials.jid}") from e
            raise
        except Exception:
            await transport.stop()
            raise

        dispatcher = StanzaDispatcher(
            local_jid=handle,
            conference_marker=settings.conference_marker,
            is_joined=self._is_joined,
        )
        self._install_routes(dispatcher)
        dispatcher.attach(transport)

        session = Session(username, password, settings.domain,
                          handle=handle, transport=transport, dispatcher=dispatcher)
        self.session = session
        transport.on_close(self._on_transport_closed)

        try:
            await dispatcher.send(presence())
        except AlumChatError:
            await self._teardown(session, "Initial presence failed")
            raise

        self.logger.info(f"Connected to XMPP server as {handle}")
        return session

    async def logout(self) -> None:
        """Announce unavailability, stop the transport and drop the session."""
        session = self._require_session()
        self.logger.info(f"Logging out {session.jid}")
        try:
            await session.dispatcher.send(presence(ptype='unavailable'))
        except AlumChatError as e:
            self.logger.warning(f"Could not send unavailable presence: {e}")
        await self._teardown(session, "Logged out")

    # ========================================================================
    # Account deletion
    # ========================================================================

    async def delete_account(self) -> None:
        """
        Remove the account from the server and end the session.

        Success is whichever comes first: the iq result, or the stream error
        the server sends after removing the account.

        Raises:
            RemovalFailed: The server refused the removal
        """
        session = self._require_session()
        dispatcher = session.dispatcher
        self.logger.warning(f"Deleting account {session.jid}")

        stream_closed = dispatcher.wait_for(is_account_removed_error, name='account removal')
        request_task = asyncio.ensure_future(dispatcher.request(remove_account()))
        closed_task = asyncio.ensure_future(stream_closed.wait())
        try:
            done, _ = await asyncio.wait({request_task, closed_task},
                                         return_when=asyncio.FIRST_COMPLETED)
            if closed_task in done and closed_task.exception() is None:
                self.logger.info("Account deleted (server closed the stream)")
            elif request_task in done:
                error = request_task.exception()
                if isinstance(error, StanzaError):
                    self.logger.error(f"Account deletion refused: {error}")
                    raise RemovalFailed(f"Server refused account removal: {error}") from error
                if error is not None:
                    raise error
                self.logger.info("Account deleted")
            else:
                raise closed_task.exception()
        finally:
            for task in (request_task, closed_task):
                if not task.done():
                    task.cancel()
                elif not task.cancelled():
                    task.exception()  # retrieved
            stream_closed.cancel()

        if self.session is session:
            await self._teardown(session, "Account deleted")

    # ========================================================================
    # Teardown
    # ========================================================================

    async def _teardown(self, session: Session, reason: str) -> None:
        transport = session.transport
        if session.dispatcher is not None:
            session.dispatcher.close(reason)
        if self.session is session:
            self.session = None
            self._reset_session_state()
        session.clear()
        if transport is not None:
            await transport.stop()
        self.logger.info(f"Session closed: {reason}")

    def _on_transport_closed(self, reason: Optional[str]) -> None:
        session = self.session
        if session is None:
            return
        self.logger.warning(f"Connection lost ({reason or 'unknown reason'}), session closed")
        if session.dispatcher is not None:
            session.dispatcher.close("Connection lost")
        self.session = None
        self._reset_session_state()
        session.clear()
