"""Tests for contacts, presence probes and status changes."""

import asyncio

import pytest

from alumchat.errors import AddContactFailed, ContactNotFound, NotConnected
from alumchat.roster import Presence, Show, presence_from_stanza
from alumchat.stanza import NS_ROSTER, element, iq_error, presence

from tests.conftest import auto_result

ALICE = 'alice@alumchat.xyz'


def roster_responder(*items):
    """Answer roster gets with the given <item/> attribute dicts."""
    def respond(stanza):
        query = stanza.find('query', NS_ROSTER)
        if stanza.name == 'iq' and stanza.type == 'get' and query is not None:
            result = element('query', children=[element('item', attrs) for attrs in items],
                             xmlns=NS_ROSTER)
            return [element('iq', {'type': 'result', 'id': stanza.id}, children=[result])]
        return auto_result(stanza)
    return respond


def probe_answer(**presence_args):
    """Answer presence probes from the probed contact's 'phone' resource."""
    def respond(stanza):
        if stanza.name == 'presence' and stanza.type == 'probe':
            return [presence(**presence_args).with_attrs(from_=f"{stanza.to}/phone")]
        return auto_result(stanza)
    return respond


class TestContacts:

    @pytest.mark.asyncio
    async def test_contacts_in_server_order(self, online, transports):
        transports.last.responder = roster_responder(
            {'jid': 'zoe@alumchat.xyz', 'name': 'Zoe', 'subscription': 'both'},
            {'jid': ALICE, 'subscription': 'to'},
        )
        contacts = await online.get_contacts()

        assert [c.jid for c in contacts] == ['zoe@alumchat.xyz', ALICE]
        assert contacts[0].name == 'Zoe'
        assert contacts[1].name == ALICE
        assert contacts[1].subscription == 'to'
        assert all(c.status == 'Offline' for c in contacts)

    @pytest.mark.asyncio
    async def test_contact_status_follows_presence_updates(self, online, transports):
        transports.last.responder = roster_responder({'jid': ALICE, 'subscription': 'both'})
        transports.last.push(element('presence', {'from': f'{ALICE}/phone'},
                                     children=[element('show', text='dnd')]))
        contact = await online.get_contact('alice')
        assert contact.status == 'Busy'

    @pytest.mark.asyncio
    async def test_unknown_contact(self, online, transports):
        transports.last.responder = roster_responder({'jid': ALICE})
        with pytest.raises(ContactNotFound) as info:
            await online.get_contact('bob@alumchat.xyz')
        assert str(info.value) == 'No contact found with JID bob@alumchat.xyz'

    @pytest.mark.asyncio
    async def test_empty_roster(self, online):
        assert await online.get_contacts() == []

    @pytest.mark.asyncio
    async def test_returned_contacts_are_snapshots(self, online, transports):
        transports.last.responder = roster_responder({'jid': ALICE, 'subscription': 'both'})
        contacts = await online.get_contacts()
        transports.last.push(element('presence', {'from': f'{ALICE}/phone'},
                                     children=[element('show', text='dnd')]))

        assert contacts[0].status == 'Offline'
        assert online.roster[ALICE].status == 'Busy'
        assert (await online.get_contacts())[0].status == 'Busy'


class TestAddContact:

    @pytest.mark.asyncio
    async def test_add_contact_sends_three_stanzas_in_order(self, online, transports):
        contact = await online.add_contact('bob')

        sent = transports.last.sent
        assert [s.name for s in sent] == ['iq', 'presence', 'message']
        item = sent[0].find('query', NS_ROSTER).find('item')
        assert item.get('jid') == 'bob@alumchat.xyz'
        assert sent[1].type == 'subscribe'
        assert sent[1].to == 'bob@alumchat.xyz'
        assert sent[2].body == 'Hello, I am me.'
        assert contact.jid == 'bob@alumchat.xyz'

    @pytest.mark.asyncio
    async def test_roster_error_stops_before_subscribe(self, online, transports):
        transports.last.responder = lambda s: [iq_error(s, 'not-allowed')]
        with pytest.raises(AddContactFailed) as info:
            await online.add_contact('bob')
        assert info.value.completed_steps == []
        assert [s.name for s in transports.last.sent] == ['iq']

    @pytest.mark.asyncio
    async def test_failed_greeting_reports_completed_steps(self, online, transports):
        transports.last.fail_when = lambda s: s.name == 'message'
        with pytest.raises(AddContactFailed) as info:
            await online.add_contact('bob')
        assert info.value.completed_steps == ['roster-add', 'subscribe']


class TestPresence:

    @pytest.mark.parametrize('args,expected', [
        ({}, Presence(Show.AVAILABLE)),
        ({'show': 'chat'}, Presence(Show.AVAILABLE)),
        ({'show': 'away', 'status': 'lunch'}, Presence(Show.AWAY, 'lunch')),
        ({'show': 'xa'}, Presence(Show.NOT_AVAILABLE)),
        ({'show': 'dnd'}, Presence(Show.BUSY)),
        ({'show': 'sleeping'}, Presence(Show.AVAILABLE)),
        ({'ptype': 'unavailable', 'status': 'bye'}, Presence(Show.OFFLINE, 'bye')),
        ({'ptype': 'error'}, Presence(Show.OFFLINE)),
    ])
    def test_presence_mapping(self, args, expected):
        assert presence_from_stanza(presence(**args)) == expected

    @pytest.mark.asyncio
    async def test_probe_answered(self, online, transports):
        transports.last.responder = probe_answer(show='away', status='in a meeting')
        result = await online.get_presence('alice')

        probe = transports.last.sent[0]
        assert probe.type == 'probe' and probe.to == ALICE
        assert result == Presence(Show.AWAY, 'in a meeting')
        assert online.presence_cache[ALICE] == result
        assert online.session.dispatcher.listener_count == 0

    @pytest.mark.asyncio
    async def test_answer_waits_for_settle_delay(self, online, transports):
        transports.last.responder = probe_answer(show='dnd')
        loop = asyncio.get_running_loop()
        started = loop.time()
        probe = asyncio.ensure_future(online.get_presence('alice', timeout=0.5, settle_delay=0.1))

        await asyncio.sleep(0.05)
        assert online.presence_cache[ALICE] == Presence(Show.BUSY)
        assert not probe.done()

        result = await probe
        elapsed = loop.time() - started
        assert result == Presence(Show.BUSY)
        assert 0.09 <= elapsed < 0.6

    @pytest.mark.asyncio
    async def test_probe_timeout_means_offline(self, online):
        result = await online.get_presence('alice', timeout=0.05)
        assert result == Presence.offline()
        assert online.session.dispatcher.listener_count == 0

    @pytest.mark.asyncio
    async def test_repeated_probes_leave_no_listeners(self, online, transports):
        for _ in range(3):
            await online.get_presence('alice', timeout=0.01)
        transports.last.responder = probe_answer()
        for _ in range(3):
            await online.get_presence('alice')
        assert online.session.dispatcher.listener_count == 0

    @pytest.mark.asyncio
    async def test_logout_during_probe(self, online):
        probe = asyncio.ensure_future(online.get_presence('alice', timeout=5))
        await asyncio.sleep(0)
        await online.logout()
        with pytest.raises(NotConnected):
            await probe

    @pytest.mark.asyncio
    async def test_presence_updates_notify_callback(self, online, transports):
        changes = []
        online.on_presence_changed_callback = lambda jid, p: changes.append((jid, p.show))
        transports.last.push(element('presence', {'from': f'{ALICE}/phone'}))
        transports.last.push(element('presence', {'from': f'{ALICE}/phone', 'type': 'unavailable'}))
        assert changes == [(ALICE, Show.AVAILABLE), (ALICE, Show.OFFLINE)]
        assert ALICE not in online.resources


class TestChangeStatus:

    @pytest.mark.asyncio
    @pytest.mark.parametrize('show,wire_show,wire_type', [
        ('available', None, None),
        ('away', 'away', None),
        ('Not Available', 'xa', None),
        ('busy', 'dnd', None),
        ('unavailable', None, 'unavailable'),
    ])
    async def test_status_values(self, online, transports, show, wire_show, wire_type):
        await online.change_status(show, 'hello')
        sent = transports.last.sent[-1]
        assert sent.child_text('show') == wire_show
        assert sent.type == wire_type
        assert sent.child_text('status') == 'hello'

    @pytest.mark.asyncio
    async def test_unknown_status(self, online):
        with pytest.raises(ValueError):
            await online.change_status('sleepy')
