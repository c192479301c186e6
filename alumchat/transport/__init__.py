"""Transports: the wire side of the client."""

from alumchat.transport.base import Credentials, Transport
from alumchat.transport.registration import RegistrationStream
from alumchat.transport.slixmpp_transport import SlixmppTransport

__all__ = ['Credentials', 'Transport', 'RegistrationStream', 'SlixmppTransport']
