"""
Roster and presence (RFC 6121).

Provides contact listing, contact addition, on-demand presence probes and
own-status changes. Inbound presence updates arrive through the dispatcher's
presence route and keep a per-contact presence cache current.
"""

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from alumchat.errors import AddContactFailed, ContactNotFound, NotConnected, Timeout
from alumchat.stanza import (
    NS_ROSTER, SUBSCRIPTION_TYPES, Stanza, bare_jid, chat_message, presence,
    presence_probe, qualify, roster_get, roster_set, subscription,
)


class Show(str, Enum):
    """Display availability of a contact."""
    AVAILABLE = 'Available'
    AWAY = 'Away'
    NOT_AVAILABLE = 'Not Available'
    BUSY = 'Busy'
    OFFLINE = 'Offline'


# <show/> wire value -> display availability; missing and unknown values mean available
SHOW_MAP = {
    '': Show.AVAILABLE,
    'chat': Show.AVAILABLE,
    'away': Show.AWAY,
    'xa': Show.NOT_AVAILABLE,
    'dnd': Show.BUSY,
}

# Accepted change_status() inputs -> wire show value ('unavailable' = presence type)
STATUS_CODES = {
    '': '',
    'available': '',
    'chat': 'chat',
    'away': 'away',
    'xa': 'xa',
    'not available': 'xa',
    'dnd': 'dnd',
    'busy': 'dnd',
    'unavailable': 'unavailable',
    'offline': 'unavailable',
}


@dataclass(frozen=True)
class Presence:
    show: Show
    status: Optional[str] = None

    @classmethod
    def offline(cls) -> 'Presence':
        return cls(Show.OFFLINE, None)


def presence_from_stanza(stanza: Stanza) -> Presence:
    """Map an inbound presence stanza to a Presence value."""
    ptype = stanza.type
    if ptype == 'error':
        return Presence.offline()
    status = stanza.child_text('status')
    if ptype == 'unavailable':
        return Presence(Show.OFFLINE, status)
    show = (stanza.child_text('show') or '').strip()
    return Presence(SHOW_MAP.get(show, Show.AVAILABLE), status)


@dataclass(frozen=True)
class Contact:
    """Snapshot of a roster entry; presence updates replace the cached entry."""
    jid: str
    name: str
    subscription: str = 'none'
    presence: Presence = field(default_factory=Presence.offline)

    @property
    def status(self) -> str:
        return self.presence.show.value


class RosterMixin:
    """
    Mixin providing roster and presence functionality.

    Requirements (provided by AlumChat):
    - self.settings: ClientSettings (probe_timeout, settle_delay)
    - self.session / self._require_session(): active Session
    - self.roster: Dict[str, Contact] cache of the last roster fetch
    - self.presence_cache: Dict[str, Presence] keyed by bare JID
    - self.resources: Dict[str, str] last seen full JID per bare JID
    - self.on_presence_changed_callback: Optional callable(jid, Presence)
    - self._is_joined(room): whether a JID is a joined room
    - self.logger: Logger instance
    """

    roster: Dict[str, Contact]
    presence_cache: Dict[str, Presence]
    resources: Dict[str, str]
    on_presence_changed_callback: Optional[Callable[[str, Presence], None]]

    async def get_contacts(self) -> List[Contact]:
        """Fetch the roster; contacts come back in server order."""
        session = self._require_session()
        reply = await session.dispatcher.request(roster_get())

        contacts: List[Contact] = []
        query = reply.find('query', NS_ROSTER)
        if query is not None:
            for item in query.find_all('item'):
                jid = bare_jid(item.get('jid'))
                if not jid:
                    continue
                contacts.append(Contact(
                    jid=jid,
                    name=item.get('name') or jid,
                    subscription=item.get('subscription') or 'none',
                    presence=self.presence_cache.get(jid, Presence.offline()),
                ))

        self.roster = {c.jid: c for c in contacts}
        self.logger.debug(f"Roster fetched: {len(contacts)} contacts")
        return contacts

    async def get_contact(self, jid: str) -> Contact:
        session = self._require_session()
        target = bare_jid(qualify(jid, session.domain))
        for contact in await self.get_contacts():
            if contact.jid == target:
                return contact
        raise ContactNotFound(target)

    async def add_contact(self, jid: str, name: Optional[str] = None) -> Contact:
        """
        Add a contact: roster entry, subscription request, greeting message.

        Steps already performed are not undone when a later one fails.

        Raises:
            AddContactFailed: Any step failed (completed_steps tells which went out)
        """
        session = self._require_session()
        target = bare_jid(qualify(jid, session.domain))
        completed: List[str] = []
        try:
            await session.dispatcher.request(roster_set(target, name))
            completed.append('roster-add')
            await session.dispatcher.send(subscription(target, 'subscribe'))
            completed.append('subscribe')
            await session.dispatcher.send(chat_message(target, f"Hello, I am {session.username}."))
            completed.append('greeting')
        except Exception as e:
            self.logger.error(f"Adding {target} failed after {completed or 'no steps'}: {e}")
            raise AddContactFailed(target, completed, e) from e

        contact = Contact(target, name or target, 'none',
                          self.presence_cache.get(target, Presence.offline()))
        self.roster[target] = contact
        self.logger.info(f"Contact {target} added, subscription requested")
        return contact

    async def get_presence(self, jid: str, timeout: Optional[float] = None,
                           settle_delay: Optional[float] = None) -> Presence:
        """
        Probe a contact's presence.

        The first presence from the contact wins and is returned after
        settle_delay; if none arrives within timeout the contact is Offline.

        Args:
            jid: Contact JID
            timeout: Probe timeout in seconds (default: settings.probe_timeout)
            settle_delay: Delay before resolving a received presence
                (default: settings.settle_delay)
        """
        session = self._require_session()
        timeout = self.settings.probe_timeout if timeout is None else timeout
        settle_delay = self.settings.settle_delay if settle_delay is None else settle_delay
        target = bare_jid(qualify(jid, session.domain))

        def is_answer(stanza: Stanza) -> bool:
            return (stanza.name == 'presence'
                    and bare_jid(stanza.sender) == target
                    and stanza.type not in SUBSCRIPTION_TYPES
                    and stanza.type != 'probe')

        # Installed before the probe goes out so a fast answer is not missed
        waiter = session.dispatcher.wait_for(is_answer, name=f'presence probe {target}')
        try:
            await session.dispatcher.send(presence_probe(target))
        except Exception:
            waiter.cancel()
            raise

        try:
            stanza = await waiter.wait(timeout)
        except Timeout:
            self.logger.debug(f"No presence from {target} within {timeout}s, assuming offline")
            return Presence.offline()

        result = presence_from_stanza(stanza)
        self.presence_cache[target] = result
        await asyncio.sleep(settle_delay)
        if self.session is not session:
            raise NotConnected("Session closed while probing presence")
        return result

    async def change_status(self, show: str = '', status_text: Optional[str] = None) -> None:
        """
        Broadcast own availability.

        Args:
            show: '', 'chat', 'away', 'xa', 'dnd', 'unavailable' or a display
                name ('Available', 'Away', 'Not Available', 'Busy', 'Offline')
            status_text: Optional free-text status message
        """
        session = self._require_session()
        code = STATUS_CODES.get((show or '').strip().lower())
        if code is None:
            raise ValueError(f"Unknown status '{show}'")
        if code == 'unavailable':
            stanza = presence(ptype='unavailable', status=status_text)
        else:
            stanza = presence(show=code or None, status=status_text)
        await session.dispatcher.send(stanza)
        self.logger.info(f"Status changed to '{code or 'available'}'" +
                         (f" ({status_text})" if status_text else ''))

    # ========================================================================
    # Dispatcher route
    # ========================================================================

    def _on_presence(self, stanza: Stanza) -> None:
        sender = stanza.sender
        from_jid = bare_jid(sender)
        if not from_jid or self._is_joined(from_jid):
            return  # occupant presence inside a room
        if self.session is not None and from_jid == bare_jid(self.session.handle):
            return

        result = presence_from_stanza(stanza)
        self.presence_cache[from_jid] = result
        if result.show is Show.OFFLINE:
            if self.resources.get(from_jid) == sender:
                del self.resources[from_jid]
        elif sender and sender != from_jid:
            self.resources[from_jid] = sender
        if from_jid in self.roster:
            self.roster[from_jid] = replace(self.roster[from_jid], presence=result)

        self.logger.debug(f"[PRESENCE] {from_jid} is now '{result.show.value}'")
        if self.on_presence_changed_callback:
            try:
                self.on_presence_changed_callback(from_jid, result)
            except Exception as e:
                self.logger.error(f"Error in presence changed callback: {e}")
