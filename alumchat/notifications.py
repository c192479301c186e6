"""
Notification Queue.

Pending friend requests and group invitations collected by the dispatcher
until the user accepts or rejects them.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from alumchat.dispatcher import invite_room
from alumchat.stanza import NS_CONFERENCE, Stanza, bare_jid, jid_node, muc_decline, qualify, subscription

FRIEND_REQUEST = 'friend-request'
GROUP_INVITE = 'group-invite'


@dataclass(frozen=True)
class Notification:
    """
    One pending request. Identity is (kind, sender), which is exactly what
    the rendered text shows, so the set never holds two equal strings.
    """
    kind: str
    sender: str
    inviter: Optional[str] = field(default=None, compare=False)

    @property
    def text(self) -> str:
        if self.kind == FRIEND_REQUEST:
            return f"New friend request from: {jid_node(self.sender) or self.sender}"
        return f"New group invite from: {jid_node(self.sender) or self.sender}"

    def __str__(self) -> str:
        return self.text


class NotificationQueue:
    """Set of pending notifications with kind-filtered views."""

    def __init__(self):
        self._items: Set[Notification] = set()
        self._order: List[Notification] = []

    def add(self, notification: Notification) -> bool:
        """Add a notification; returns False if an equal one is already pending."""
        if notification in self._items:
            return False
        self._items.add(notification)
        self._order.append(notification)
        return True

    def remove(self, kind: str, sender: str) -> Optional[Notification]:
        """Remove and return the pending notification for (kind, sender), if any."""
        for item in self._order:
            if item.kind == kind and item.sender == sender:
                self._items.discard(item)
                self._order.remove(item)
                return item
        return None

    def find(self, kind: str, sender: str) -> Optional[Notification]:
        for item in self._order:
            if item.kind == kind and item.sender == sender:
                return item
        return None

    def of_kind(self, kind: str) -> List[Notification]:
        return [n for n in self._order if n.kind == kind]

    def clear(self) -> None:
        self._items.clear()
        self._order.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._order))


class NotificationsMixin:
    """
    Mixin handling friend requests and group invitations.

    Requirements (provided by AlumChat):
    - self.notifications: NotificationQueue
    - self.settings: ClientSettings (domain, conference_domain)
    - self.on_notification_callback: Optional callable(Notification)
    - self._require_session(): returns the active Session or raises NotConnected
    - self._send(stanza): sends through the session dispatcher
    - self.join_group(room): coroutine joining a room
    - self.logger: Logger instance
    """

    notifications: NotificationQueue
    on_notification_callback: Optional[Callable[[Notification], None]]

    # ========================================================================
    # Dispatcher routes
    # ========================================================================

    def _on_subscribe_request(self, stanza: Stanza) -> None:
        sender = bare_jid(stanza.sender)
        if not sender:
            return
        self.logger.info(f"Presence subscription request from {sender}")
        self._notify(Notification(FRIEND_REQUEST, sender))

    def _on_group_invite(self, stanza: Stanza) -> None:
        room = invite_room(stanza)
        if not room:
            return
        inviter = None
        for el in stanza.iter():
            if el.name == 'invite' and el.get('from'):
                inviter = bare_jid(el.get('from'))
                break
        if inviter is None and stanza.find('x', NS_CONFERENCE) is not None:
            inviter = bare_jid(stanza.sender)
        self.logger.info(f"MUC invite received: {room} from {inviter}")
        self._notify(Notification(GROUP_INVITE, room, inviter=inviter))

    def _notify(self, notification: Notification) -> None:
        if not self.notifications.add(notification):
            self.logger.debug(f"Duplicate notification ignored: {notification.text}")
            return
        if self.on_notification_callback:
            try:
                self.on_notification_callback(notification)
            except Exception as e:
                self.logger.error(f"Error in notification callback: {e}")

    # ========================================================================
    # Views
    # ========================================================================

    def get_notifications(self) -> List[str]:
        return [n.text for n in self.notifications]

    def get_contact_requests(self) -> List[str]:
        return [n.text for n in self.notifications.of_kind(FRIEND_REQUEST)]

    def get_invite_requests(self) -> List[str]:
        return [n.text for n in self.notifications.of_kind(GROUP_INVITE)]

    # ========================================================================
    # Resolution
    # ========================================================================

    async def handle_contact_request(self, from_jid: str, accept: bool) -> None:
        """
        Accept or reject a pending friend request.

        Sends 'subscribed' or 'unsubscribed' presence and removes the pending
        notification. Resolving a request that is not pending only sends the
        presence.
        """
        session = self._require_session()
        jid = bare_jid(qualify(from_jid, session.domain))
        await self._send(subscription(jid, 'subscribed' if accept else 'unsubscribed'))
        self.logger.info(f"{'Accepted' if accept else 'Rejected'} friend request from {jid}")
        self.notifications.remove(FRIEND_REQUEST, jid)

    async def handle_group_invite(self, room: str, accept: bool) -> None:
        """
        Accept (join) or decline a pending group invitation.

        Declines are addressed to the inviter through the room.
        """
        self._require_session()
        room_jid = bare_jid(qualify(room, self.settings.conference_domain))
        pending = self.notifications.find(GROUP_INVITE, room_jid)
        if accept:
            await self.join_group(room_jid)
        else:
            inviter = pending.inviter if pending else None
            await self._send(muc_decline(room_jid, inviter))
            self.logger.info(f"Declined invitation to {room_jid}")
        self.notifications.remove(GROUP_INVITE, room_jid)
