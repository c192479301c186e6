"""
AlumChat - XMPP console client core

Features:
- XEP-0077 (In-Band Registration) account creation and removal
- RFC 6121 roster, subscriptions and presence probes
- XEP-0045 (Multi-User Chat) group creation, invitations and messaging
- XEP-0313 (Message Archive Management) room history
- XEP-0095/0096 stream initiation + XEP-0047 in-band bytestream file transfer
- Pending friend requests and group invitations kept until answered
"""

import logging
from typing import Callable, Dict, Optional, Set, Tuple

from alumchat.config import ClientSettings
from alumchat.dispatcher import (
    ROUTE_CHAT, ROUTE_GROUPCHAT, ROUTE_INVITE, ROUTE_PRESENCE, ROUTE_SUBSCRIBE,
    Listener, StanzaDispatcher,
)
from alumchat.file_transfer import FileTransferMixin, FileTransferSession
from alumchat.messaging import MessagingMixin
from alumchat.notifications import Notification, NotificationQueue, NotificationsMixin
from alumchat.roster import Contact, Presence, RosterMixin
from alumchat.session import Session, SessionMixin, TransportFactory
from alumchat.stanza import NS_IBB, NS_SI
from alumchat.transport import RegistrationStream, SlixmppTransport, Transport


class AlumChat(SessionMixin, RosterMixin, NotificationsMixin, MessagingMixin, FileTransferMixin):
    """
    XMPP client for one account at a time.

    Args:
        settings: Client settings (server, timeouts, file transfer options)
        transport_factory: Callable(authenticated) -> Transport; defaults to
            SlixmppTransport for login and RegistrationStream for register
        on_chat_message_callback: callable(from_jid, body) for incoming chat messages
        on_group_message_callback: callable(room_jid, nick, body) for incoming group messages
        on_notification_callback: callable(Notification) for new friend requests / invites
        on_presence_changed_callback: callable(jid, Presence) for contact presence updates
        on_file_received_callback: callable(from_jid, path) for completed incoming files
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        transport_factory: Optional[TransportFactory] = None,
        on_chat_message_callback: Optional[Callable[[str, str], None]] = None,
        on_group_message_callback: Optional[Callable[[str, str, str], None]] = None,
        on_notification_callback: Optional[Callable[[Notification], None]] = None,
        on_presence_changed_callback: Optional[Callable[[str, Presence], None]] = None,
        on_file_received_callback: Optional[Callable] = None,
    ):
        self.settings = settings or ClientSettings()
        self.transport_factory = transport_factory or self._default_transport_factory
        self.logger = logging.getLogger('alumchat.client')

        self.on_chat_message_callback = on_chat_message_callback
        self.on_group_message_callback = on_group_message_callback
        self.on_notification_callback = on_notification_callback
        self.on_presence_changed_callback = on_presence_changed_callback
        self.on_file_received_callback = on_file_received_callback

        # Console mutes unsolicited chat output while a conversation is open
        self.receive_notifications = True

        self.session: Optional[Session] = None
        self.notifications = NotificationQueue()
        self.roster: Dict[str, Contact] = {}
        self.presence_cache: Dict[str, Presence] = {}
        self.resources: Dict[str, str] = {}
        self.joined_rooms: Set[str] = set()
        self._conversation_listeners: Dict[Tuple[str, str], Listener] = {}
        self._incoming_transfers: Dict[str, FileTransferSession] = {}

    def _default_transport_factory(self, authenticated: bool) -> Transport:
        s = self.settings
        if authenticated:
            return SlixmppTransport(
                host=s.host,
                port=s.port,
                resource=s.resource,
                sasl_mech=s.sasl_mech,
                proxy_url=s.proxy_url,
                connect_timeout=s.connect_timeout,
                claimed_namespaces=(NS_SI, NS_IBB),
            )
        return RegistrationStream(
            host=s.host,
            port=s.port,
            proxy_url=s.proxy_url,
            timeout=s.connect_timeout,
            verify_certificate=s.verify_certificate,
        )

    def _install_routes(self, dispatcher: StanzaDispatcher) -> None:
        dispatcher.set_route(ROUTE_CHAT, self._on_chat_message)
        dispatcher.set_route(ROUTE_GROUPCHAT, self._on_groupchat_message)
        dispatcher.set_route(ROUTE_INVITE, self._on_group_invite)
        dispatcher.set_route(ROUTE_SUBSCRIBE, self._on_subscribe_request)
        dispatcher.set_route(ROUTE_PRESENCE, self._on_presence)
        dispatcher.register_iq_handler(NS_SI, self._on_si_request)
        dispatcher.register_iq_handler(NS_IBB, self._on_ibb_request)

    def _reset_session_state(self) -> None:
        self.notifications.clear()
        self.roster.clear()
        self.presence_cache.clear()
        self.resources.clear()
        self.joined_rooms.clear()
        self._conversation_listeners.clear()
        for transfer in self._incoming_transfers.values():
            if transfer.expiry is not None:
                transfer.expiry.cancel()
        self._incoming_transfers.clear()
        self.receive_notifications = True
