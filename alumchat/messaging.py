"""
Messaging module for AlumChat.

Direct (1-to-1) chat, Multi-User Chat (XEP-0045) group messaging, group
creation/invitation/join, and room history via Message Archive Management
(XEP-0313).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from alumchat.dispatcher import Listener
from alumchat.errors import AlumChatError, ArchiveUnavailable, StanzaError
from alumchat.stanza import (
    NS_DELAY, NS_DISCO_INFO, NS_FORWARD, NS_MAM, NS_MUC_USER, Stanza,
    bare_jid, chat_message, disco_info, error_condition, groupchat_message,
    jid_node, jid_resource, mam_query, muc_invite, muc_join, muc_leave,
    muc_owner_config, new_id, qualify,
)

ELLIPSIS = '...'


@dataclass(frozen=True)
class HistoryEntry:
    sender: str
    body: str
    timestamp: Optional[datetime] = None


def truncate(body: str, length: int) -> str:
    """Cut a body to length characters plus an ellipsis marker."""
    if len(body) <= length:
        return body
    return body[:length] + ELLIPSIS


def _parse_stamp(stamp: Optional[str]) -> Optional[datetime]:
    if not stamp:
        return None
    try:
        return datetime.fromisoformat(stamp.replace('Z', '+00:00'))
    except ValueError:
        return None


class MessagingMixin:
    """
    Mixin providing messaging functionality.

    Requirements (provided by AlumChat):
    - self.settings: ClientSettings (conference_domain, join_timeout, history_max, display_length)
    - self.session / self._require_session(): active Session
    - self.joined_rooms: Set of joined room JIDs
    - self.receive_notifications: Whether unsolicited messages are announced
    - self.on_chat_message_callback: Optional callable(from_jid, body)
    - self.on_group_message_callback: Optional callable(room_jid, nick, body)
    - self.logger: Logger instance
    """

    joined_rooms: Set[str]
    receive_notifications: bool
    on_chat_message_callback: Optional[Callable[[str, str], None]]
    on_group_message_callback: Optional[Callable[[str, str, str], None]]
    _conversation_listeners: Dict[Tuple[str, str], Listener]

    def _room_jid(self, room: str) -> str:
        return bare_jid(qualify(room, self.settings.conference_domain))

    def _is_joined(self, room: str) -> bool:
        return bare_jid(room) in self.joined_rooms

    # ========================================================================
    # Sending
    # ========================================================================

    async def direct_message(self, to: str, body: str) -> str:
        """
        Send a 1-to-1 chat message.

        Returns:
            Message ID
        """
        session = self._require_session()
        stanza = chat_message(qualify(to, session.domain), body)
        await session.dispatcher.send(stanza)
        self.logger.debug(f"Sent chat message {stanza.id} to {stanza.to}")
        return stanza.id

    async def chat_message(self, room: str, body: str) -> str:
        """
        Send a message to a group chat.

        Returns:
            Message ID
        """
        session = self._require_session()
        stanza = groupchat_message(self._room_jid(room), body)
        await session.dispatcher.send(stanza)
        self.logger.debug(f"Sent groupchat message {stanza.id} to {stanza.to}")
        return stanza.id

    # ========================================================================
    # Conversation listeners
    # ========================================================================

    def on_direct_message(self, jid: str, callback: Callable[[str, str], None]) -> Listener:
        """
        Listen to one contact's chat messages; callback(from_jid, body).

        Replaces any listener previously registered for the same contact.
        """
        session = self._require_session()
        peer = bare_jid(qualify(jid, session.domain))

        def matches(stanza: Stanza) -> bool:
            return (stanza.name == 'message' and stanza.type == 'chat'
                    and bool(stanza.body) and bare_jid(stanza.sender) == peer)

        def deliver(stanza: Stanza) -> None:
            callback(peer, stanza.body)

        return self._replace_listener(('chat', peer), matches, deliver)

    def on_group_message(self, room: str, callback: Callable[[str, str], None]) -> Listener:
        """
        Listen to one room's messages; callback(nick, body).

        Own messages echoed back by the room are skipped and long bodies are
        cut to settings.display_length characters. Replaces any listener
        previously registered for the same room.
        """
        session = self._require_session()
        room_jid = self._room_jid(room)
        own_nick = session.username
        length = self.settings.display_length

        def matches(stanza: Stanza) -> bool:
            return (stanza.name == 'message' and stanza.type == 'groupchat'
                    and bool(stanza.body) and bare_jid(stanza.sender) == room_jid
                    and jid_resource(stanza.sender) != own_nick)

        def deliver(stanza: Stanza) -> None:
            callback(jid_resource(stanza.sender), truncate(stanza.body, length))

        return self._replace_listener(('groupchat', room_jid), matches, deliver)

    def _replace_listener(self, key: Tuple[str, str], matches, deliver) -> Listener:
        dispatcher = self._require_session().dispatcher
        previous = self._conversation_listeners.pop(key, None)
        if previous is not None:
            dispatcher.remove_listener(previous)
        listener = dispatcher.add_listener(matches, deliver, name=f"{key[0]} {key[1]}")
        self._conversation_listeners[key] = listener
        return listener

    def remove_listener(self, listener: Listener) -> None:
        for key, value in list(self._conversation_listeners.items()):
            if value is listener:
                del self._conversation_listeners[key]
        if self.session is not None and self.session.dispatcher is not None:
            self.session.dispatcher.remove_listener(listener)

    # ========================================================================
    # Dispatcher routes
    # ========================================================================

    def _on_chat_message(self, stanza: Stanza) -> None:
        from_jid = bare_jid(stanza.sender)
        if not self.receive_notifications:
            return
        if self.on_chat_message_callback:
            try:
                self.on_chat_message_callback(from_jid, stanza.body)
            except Exception as e:
                self.logger.error(f"Error in chat message callback: {e}")
        else:
            self.logger.info(f"New message from {jid_node(from_jid) or from_jid}: {stanza.body}")

    def _on_groupchat_message(self, stanza: Stanza) -> None:
        room_jid = bare_jid(stanza.sender)
        nick = jid_resource(stanza.sender)
        if self.session is not None and nick == self.session.username:
            return  # own echo
        if not self.receive_notifications:
            return
        body = truncate(stanza.body, self.settings.display_length)
        if self.on_group_message_callback:
            try:
                self.on_group_message_callback(room_jid, nick, body)
            except Exception as e:
                self.logger.error(f"Error in group message callback: {e}")
        else:
            self.logger.info(f"New message from {stanza.sender} in group {jid_node(room_jid)}: {body}")

    # ========================================================================
    # Groups
    # ========================================================================

    async def create_group(self, room: str) -> str:
        """
        Create a members-only room and post a welcome message.

        Join presence, then (after the room confirms our occupancy) the owner
        configuration, then the welcome message. A failing step aborts the
        ones after it; nothing is undone.

        Returns:
            Room JID
        """
        session = self._require_session()
        dispatcher = session.dispatcher
        room_jid = self._room_jid(room)
        nick = session.username

        def is_self_presence(stanza: Stanza) -> bool:
            if stanza.name != 'presence' or bare_jid(stanza.sender) != room_jid:
                return False
            if stanza.type == 'error' or jid_resource(stanza.sender) == nick:
                return True
            x = stanza.find('x', NS_MUC_USER)
            return x is not None and any(s.get('code') == '110' for s in x.find_all('status'))

        joined = dispatcher.wait_for(is_self_presence, name=f'self-presence {room_jid}')
        try:
            await dispatcher.send(muc_join(room_jid, nick))
        except Exception:
            joined.cancel()
            raise
        reply = await joined.wait(self.settings.join_timeout)
        if reply.type == 'error':
            condition, error_type, text = error_condition(reply)
            self.logger.error(f"MUC join error for {room_jid}: {condition} - {text}")
            raise StanzaError(reply, condition, error_type, text)
        self.joined_rooms.add(room_jid)
        self.logger.info(f"Self-presence confirmed in {room_jid} as {nick}")

        await dispatcher.request(muc_owner_config(room_jid, {'muc#roomconfig_membersonly': '1'}))
        self.logger.info(f"Room {room_jid} configured members-only")

        await dispatcher.send(groupchat_message(room_jid, f"Welcome to the group {jid_node(room_jid)}."))
        return room_jid

    async def invite_to_group(self, room: str, user: str, reason: Optional[str] = None) -> None:
        session = self._require_session()
        room_jid = self._room_jid(room)
        invitee = bare_jid(qualify(user, session.domain))
        await session.dispatcher.send(muc_invite(room_jid, invitee, reason))
        self.logger.info(f"Invited {invitee} to {room_jid}")

    async def join_group(self, room: str) -> List[HistoryEntry]:
        """
        Join a room and fetch its archived history.

        History retrieval is best effort: failures are logged and an empty
        list is returned.
        """
        session = self._require_session()
        room_jid = self._room_jid(room)
        # Room history comes from the archive, not from join-time replay
        await session.dispatcher.send(muc_join(room_jid, session.username, history_max=0))
        self.joined_rooms.add(room_jid)
        self.logger.info(f"Joining MUC: {room_jid} as {session.username}")

        try:
            return await self.retrieve_group_chat_history(room_jid)
        except AlumChatError as e:
            self.logger.warning(f"Could not load history for {room_jid}: {e}")
            return []

    async def leave_group(self, room: str) -> None:
        session = self._require_session()
        room_jid = self._room_jid(room)
        await session.dispatcher.send(muc_leave(room_jid, session.username))
        self.joined_rooms.discard(room_jid)
        listener = self._conversation_listeners.pop(('groupchat', room_jid), None)
        if listener is not None:
            session.dispatcher.remove_listener(listener)
        self.logger.info(f"Left {room_jid}")

    # ========================================================================
    # History (XEP-0313)
    # ========================================================================

    async def _disco_features(self, jid: Optional[str]) -> Set[str]:
        try:
            reply = await self._request(disco_info(jid))
        except StanzaError as e:
            self.logger.debug(f"disco#info on {jid} failed: {e}")
            return set()
        query = reply.find('query', NS_DISCO_INFO)
        if query is None:
            return set()
        return {f.get('var') for f in query.find_all('feature') if f.get('var')}

    async def _find_archive(self, room_jid: str) -> Tuple[Optional[str], Optional[str]]:
        """(archive JID, 'with' filter) for a room; archive None means our own account."""
        if NS_MAM in await self._disco_features(room_jid):
            return room_jid, None
        own = bare_jid(self._require_session().handle)
        if NS_MAM in await self._disco_features(own):
            return None, room_jid
        raise ArchiveUnavailable(f"No message archive available for {room_jid}")

    async def retrieve_group_chat_history(self, room: str,
                                          max_messages: Optional[int] = None) -> List[HistoryEntry]:
        """
        Retrieve a room's message history from the archive.

        Queries the room's own archive when it has one, otherwise the account
        archive filtered by the room JID.

        Raises:
            ArchiveUnavailable: Neither archive exists
        """
        session = self._require_session()
        dispatcher = session.dispatcher
        room_jid = self._room_jid(room)
        max_messages = max_messages or self.settings.history_max

        archive, with_jid = await self._find_archive(room_jid)
        archive_owner = archive or bare_jid(session.handle)
        query_id = new_id('mamq')
        entries: List[HistoryEntry] = []

        def is_result(stanza: Stanza) -> bool:
            if stanza.name != 'message':
                return False
            if stanza.sender and bare_jid(stanza.sender) != archive_owner:
                return False
            result = stanza.find('result', NS_MAM)
            return result is not None and result.get('queryid') == query_id

        def collect(stanza: Stanza) -> None:
            forwarded = stanza.find('result', NS_MAM).find('forwarded', NS_FORWARD)
            if forwarded is None:
                return
            message = forwarded.find('message')
            if message is None or not message.body:
                return
            delay = forwarded.find('delay', NS_DELAY)
            entries.append(HistoryEntry(
                sender=message.sender or '',
                body=message.body,
                timestamp=_parse_stamp(delay.get('stamp') if delay is not None else None),
            ))

        listener = dispatcher.add_listener(is_result, collect, name=f'mam {room_jid}')
        try:
            await dispatcher.request(mam_query(archive, query_id, with_jid, max_messages))
        finally:
            dispatcher.remove_listener(listener)

        self.logger.info(f"Retrieved {len(entries)} archived messages for {room_jid}")
        return entries
