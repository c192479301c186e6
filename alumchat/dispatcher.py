"""
Stanza Dispatcher.

The single inbound listener of a session. For every stanza the transport
delivers it:

1. resolves a pending iq request from the correlation table (id + sender),
2. runs registered listeners (one-shot waiters, conversation listeners),
3. classifies the stanza and hands it to the route handler the client
   installed for that class.

dispatch() never raises; malformed stanzas are tolerated and handler
failures are logged.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from alumchat.errors import NotConnected, StanzaError, Timeout
from alumchat.stanza import (
    NS_CONFERENCE, NS_MUC_USER, NS_STREAM, SUBSCRIPTION_TYPES, Stanza,
    bare_jid, error_condition, iq_error, jid_domain,
)
from alumchat.transport.base import Transport

# Route names
ROUTE_CHAT = 'chat'
ROUTE_GROUPCHAT = 'groupchat'
ROUTE_INVITE = 'invite'
ROUTE_SUBSCRIBE = 'subscribe'
ROUTE_PRESENCE = 'presence'
ROUTE_IQ_REQUEST = 'iq-request'

Predicate = Callable[[Stanza], bool]
Handler = Callable[[Stanza], Optional[Awaitable[Any]]]


def is_stream_error(stanza: Stanza) -> bool:
    return stanza.name == 'error' and stanza.xmlns == NS_STREAM


def invite_room(stanza: Stanza) -> Optional[str]:
    """Room JID a message invites us to, or None (mediated or direct invite)."""
    muc_user = stanza.find('x', NS_MUC_USER)
    if muc_user is not None and muc_user.find('invite') is not None:
        return bare_jid(stanza.sender) or None
    direct = stanza.find('x', NS_CONFERENCE)
    if direct is not None and direct.get('jid'):
        return bare_jid(direct.get('jid'))
    return None


def classify(stanza: Stanza, conference_marker: str = 'conference',
             is_joined: Callable[[str], bool] = lambda room: False) -> Optional[str]:
    """
    Route name for an inbound stanza, or None when nothing handles it.

    Args:
        stanza: Inbound stanza
        conference_marker: Substring identifying the MUC service domain
        is_joined: Whether a room (bare JID) has already been joined
    """
    if stanza.name == 'message':
        # Invites may carry a fallback body, so they are checked before chat routing
        room = invite_room(stanza)
        if room is not None and not is_joined(room):
            if (stanza.find('x', NS_CONFERENCE) is not None
                    or conference_marker in jid_domain(stanza.sender)):
                return ROUTE_INVITE
        mtype = stanza.type
        has_body = bool(stanza.body)
        if mtype == 'chat' and has_body:
            return ROUTE_CHAT
        if mtype == 'groupchat' and has_body:
            return ROUTE_GROUPCHAT
        return None

    if stanza.name == 'presence':
        if stanza.type == 'subscribe':
            return ROUTE_SUBSCRIBE
        if stanza.type in SUBSCRIPTION_TYPES or stanza.type == 'probe':
            return None
        return ROUTE_PRESENCE

    if stanza.name == 'iq' and stanza.type in ('get', 'set'):
        return ROUTE_IQ_REQUEST

    return None


@dataclass(eq=False)
class Listener:
    """Handle returned by add_listener(); pass it back to remove_listener()."""
    predicate: Predicate
    callback: Callable[[Stanza], Any]
    once: bool = False
    name: str = ''


@dataclass
class _PendingRequest:
    future: asyncio.Future
    to: Optional[str]


class Waiter:
    """
    One-shot wait for the first stanza matching a predicate.

    The listener is installed at construction, so create the waiter before
    sending whatever provokes the awaited stanza. It is removed on
    resolution, timeout, cancel() or when the dispatcher closes.
    """

    def __init__(self, dispatcher: 'StanzaDispatcher', predicate: Predicate, name: str = ''):
        self._dispatcher = dispatcher
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.listener = dispatcher.add_listener(predicate, self._resolve, once=True, name=name)
        dispatcher._waiters.add(self)

    def _resolve(self, stanza: Stanza) -> None:
        if not self.future.done():
            self.future.set_result(stanza)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)
            # Mark retrieved so an un-awaited waiter does not warn at GC time
            self.future.exception()

    async def wait(self, timeout: Optional[float] = None) -> Stanza:
        try:
            if timeout is None:
                return await self.future
            return await asyncio.wait_for(self.future, timeout)
        except asyncio.TimeoutError:
            raise Timeout(f"No matching stanza within {timeout}s ({self.listener.name or 'waiter'})")
        finally:
            self.cancel()

    def cancel(self) -> None:
        self._dispatcher.remove_listener(self.listener)
        self._dispatcher._waiters.discard(self)
        if not self.future.done():
            self.future.cancel()


class StanzaDispatcher:
    """
    Inbound stanza router with request correlation.

    Args:
        local_jid: Own JID (full or bare); iq replies without 'to' are
            accepted only from this account or its server
        conference_marker: Substring identifying the MUC service domain
        is_joined: Callable telling whether a room has been joined
    """

    def __init__(self, local_jid: Optional[str] = None, conference_marker: str = 'conference',
                 is_joined: Callable[[str], bool] = lambda room: False):
        self.local_jid = local_jid
        self.conference_marker = conference_marker
        self.is_joined = is_joined
        self.logger = logging.getLogger('alumchat.dispatcher')
        self.closed = False
        self._transport: Optional[Transport] = None
        self._pending: Dict[str, _PendingRequest] = {}
        self._listeners: List[Listener] = []
        self._waiters: Set[Waiter] = set()
        self._routes: Dict[str, Handler] = {}
        self._iq_handlers: Dict[str, Handler] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ========================================================================
    # Wiring
    # ========================================================================

    def attach(self, transport: Transport) -> None:
        self._transport = transport
        transport.on_stanza(self.dispatch)

    def set_route(self, route: str, handler: Handler) -> None:
        self._routes[route] = handler

    def register_iq_handler(self, namespace: str, handler: Handler) -> None:
        """Handle inbound iq get/set whose payload is in this namespace."""
        self._iq_handlers[namespace] = handler

    def add_listener(self, predicate: Predicate, callback: Callable[[Stanza], Any],
                     once: bool = False, name: str = '') -> Listener:
        listener = Listener(predicate, callback, once, name)
        self._listeners.append(listener)
        return listener

    def remove_listener(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def wait_for(self, predicate: Predicate, name: str = '') -> Waiter:
        if self.closed:
            raise NotConnected("Session closed")
        return Waiter(self, predicate, name)

    # ========================================================================
    # Outbound
    # ========================================================================

    async def send(self, stanza: Stanza) -> None:
        if self.closed or self._transport is None:
            raise NotConnected("Session closed")
        await self._transport.send(stanza)

    async def request(self, stanza: Stanza, timeout: Optional[float] = None) -> Stanza:
        """
        Send an iq and wait for the reply with the same id.

        Returns:
            The iq result stanza

        Raises:
            StanzaError: The reply was type='error'
            NotConnected: The session closed while waiting
            Timeout: timeout given and expired
        """
        if self.closed:
            raise NotConnected("Session closed")
        iq_id = stanza.id
        if not iq_id:
            raise ValueError("iq request needs an id")
        future = asyncio.get_running_loop().create_future()
        self._pending[iq_id] = _PendingRequest(future, stanza.to)
        try:
            await self.send(stanza)
            if timeout is None:
                reply = await future
            else:
                reply = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise Timeout(f"No reply to iq {iq_id} within {timeout}s")
        finally:
            self._pending.pop(iq_id, None)

        if reply.type == 'error':
            condition, error_type, text = error_condition(reply)
            raise StanzaError(reply, condition, error_type, text)
        return reply

    # ========================================================================
    # Inbound
    # ========================================================================

    def dispatch(self, stanza: Stanza) -> None:
        if self.closed:
            return
        try:
            if self._resolve_pending(stanza):
                return
            self._run_listeners(stanza)
            if is_stream_error(stanza):
                return
            route = classify(stanza, self.conference_marker, self.is_joined)
            if route == ROUTE_IQ_REQUEST:
                self._handle_iq_request(stanza)
            elif route is not None:
                handler = self._routes.get(route)
                if handler is not None:
                    self._invoke(handler, stanza, route)
        except Exception as e:
            self.logger.error(f"Failed to dispatch <{stanza.name}> from {stanza.sender}: {e}")

    def _reply_sender_ok(self, expected_to: Optional[str], sender: Optional[str]) -> bool:
        if expected_to:
            return sender == expected_to or bare_jid(sender) == bare_jid(expected_to)
        # Requests addressed to our own account/server
        if not sender:
            return True
        own_bare = bare_jid(self.local_jid)
        return bare_jid(sender) == own_bare or sender == jid_domain(own_bare)

    def _resolve_pending(self, stanza: Stanza) -> bool:
        if stanza.name != 'iq' or stanza.type not in ('result', 'error'):
            return False
        pending = self._pending.get(stanza.id or '')
        if pending is None:
            return False
        if not self._reply_sender_ok(pending.to, stanza.sender):
            self.logger.warning(f"Ignoring iq {stanza.id} reply from unexpected sender {stanza.sender}")
            return False
        if not pending.future.done():
            pending.future.set_result(stanza)
        return True

    def _run_listeners(self, stanza: Stanza) -> None:
        for listener in list(self._listeners):
            if listener not in self._listeners:
                continue  # removed by an earlier callback
            try:
                matched = listener.predicate(stanza)
            except Exception as e:
                self.logger.debug(f"Listener predicate {listener.name!r} failed: {e}")
                continue
            if not matched:
                continue
            if listener.once:
                self.remove_listener(listener)
            self._invoke(listener.callback, stanza, listener.name or 'listener')

    def _handle_iq_request(self, stanza: Stanza) -> None:
        payload = stanza.payload
        handler = self._iq_handlers.get(payload.xmlns) if payload is not None else None
        if handler is not None:
            self._invoke(handler, stanza, f"iq {payload.xmlns}")
            return
        self.logger.debug(f"No handler for iq {stanza.type} from {stanza.sender}, replying service-unavailable")
        self._spawn(self.send(iq_error(stanza, 'service-unavailable')), 'iq error reply')

    def _invoke(self, handler: Callable[[Stanza], Any], stanza: Stanza, label: str) -> None:
        try:
            result = handler(stanza)
        except Exception as e:
            self.logger.error(f"Error in {label} handler: {e}")
            return
        if asyncio.iscoroutine(result):
            self._spawn(result, label)

    def _spawn(self, coro, label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self.logger.error(f"Error in {label} handler: {t.exception()}")

        task.add_done_callback(_done)

    # ========================================================================
    # Shutdown
    # ========================================================================

    def close(self, reason: str = "Session closed") -> None:
        """Detach from the transport and fail everything still waiting."""
        if self.closed:
            return
        self.closed = True
        if self._transport is not None:
            self._transport.remove_stanza_handler(self.dispatch)
        for pending in self._pending.values():
            if not pending.future.done():
                pending.future.set_exception(NotConnected(reason))
        self._pending.clear()
        for waiter in list(self._waiters):
            waiter.fail(NotConnected(reason))
            waiter.cancel()
        self._listeners.clear()
        for task in list(self._tasks):
            task.cancel()
        self.logger.debug(f"Dispatcher closed: {reason}")
