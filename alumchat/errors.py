"""
Exception hierarchy for AlumChat.

Every failure raised by the client core derives from AlumChatError so the
console (or any embedding application) can catch one base class.
"""

from typing import Optional, Sequence


class AlumChatError(Exception):
    """Base class for all client errors."""


class ConnectionConflict(AlumChatError):
    """register/login attempted while a session is already active."""


class NotConnected(AlumChatError):
    """Operation requires an active session (or the session was closed mid-wait)."""


class AuthenticationFailed(AlumChatError):
    """Server rejected the credentials with not-authorized."""


class RegistrationConflict(AlumChatError):
    """Requested username already exists on the server."""


class ContactNotFound(AlumChatError):
    """No roster entry for the requested JID."""

    def __init__(self, jid: str):
        super().__init__(f"No contact found with JID {jid}")
        self.jid = jid


class AddContactFailed(AlumChatError):
    """
    One of the add-contact steps failed.

    completed_steps lists the steps that reached the server before the
    failure; they are not rolled back.
    """

    def __init__(self, jid: str, completed_steps: Sequence[str], cause: Exception):
        steps = ', '.join(completed_steps) if completed_steps else 'none'
        super().__init__(f"Failed to add contact {jid} (completed: {steps}): {cause}")
        self.jid = jid
        self.completed_steps = list(completed_steps)
        self.cause = cause


class ArchiveUnavailable(AlumChatError):
    """Neither the room nor the account server offers a message archive."""


class SendFailed(AlumChatError):
    """Transport could not write the stanza."""


class Timeout(AlumChatError, TimeoutError):
    """A bounded wait (presence probe, MUC self-presence) expired."""


class RemovalFailed(AlumChatError):
    """Server refused the account removal request."""


class TransferRejected(AlumChatError):
    """Peer declined the file offer or chose an unsupported stream method."""


class StanzaError(AlumChatError):
    """
    An iq request came back with type='error'.

    Attributes:
        condition: Defined condition element name (e.g. 'conflict', 'item-not-found')
        error_type: Error type attribute ('cancel', 'auth', 'modify', ...)
        text: Optional human-readable text from the server
        stanza: The full error reply
    """

    def __init__(self, stanza, condition: str, error_type: str = '', text: Optional[str] = None):
        message = f"{condition}"
        if text:
            message += f": {text}"
        super().__init__(message)
        self.stanza = stanza
        self.condition = condition
        self.error_type = error_type
        self.text = text


class TransportAuthError(AlumChatError):
    """Raised by a transport when SASL authentication fails."""

    def __init__(self, condition: str, text: Optional[str] = None):
        super().__init__(f"Authentication failed: {condition}" + (f" ({text})" if text else ""))
        self.condition = condition
        self.text = text
