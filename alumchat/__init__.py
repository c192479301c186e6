"""
AlumChat - XMPP console client core.

Session, roster/presence, notifications, direct and group messaging, and
in-band file transfer over a pluggable transport.
"""

from alumchat.client import AlumChat
from alumchat.config import ClientSettings, load_config
from alumchat.errors import (
    AddContactFailed, AlumChatError, ArchiveUnavailable, AuthenticationFailed,
    ConnectionConflict, ContactNotFound, NotConnected, RegistrationConflict,
    RemovalFailed, SendFailed, StanzaError, Timeout, TransferRejected,
)
from alumchat.roster import Contact, Presence, Show

__version__ = '0.1.0'

__all__ = [
    'AlumChat', 'ClientSettings', 'load_config',
    'Contact', 'Presence', 'Show',
    'AlumChatError', 'AddContactFailed', 'ArchiveUnavailable', 'AuthenticationFailed',
    'ConnectionConflict', 'ContactNotFound', 'NotConnected', 'RegistrationConflict',
    'RemovalFailed', 'SendFailed', 'StanzaError', 'Timeout', 'TransferRejected',
]
