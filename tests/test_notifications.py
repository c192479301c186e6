"""Tests for pending friend requests and group invitations."""

import pytest

from alumchat.notifications import FRIEND_REQUEST, GROUP_INVITE, Notification, NotificationQueue
from alumchat.stanza import NS_CONFERENCE, NS_MUC, NS_MUC_USER, element

ROOM = 'room@conference.alumchat.xyz'


def subscribe_from(jid):
    return element('presence', {'type': 'subscribe', 'from': jid})


def mediated_invite(room=ROOM, inviter='bob@alumchat.xyz/laptop'):
    invite = element('invite', {'from': inviter}, children=[element('reason', text='join us')])
    return element('message', {'from': room, 'to': 'me@alumchat.xyz'},
                   children=[element('x', children=[invite], xmlns=NS_MUC_USER)])


class TestNotificationQueue:

    def test_duplicates_are_ignored(self):
        queue = NotificationQueue()
        assert queue.add(Notification(FRIEND_REQUEST, 'alice@alumchat.xyz'))
        assert not queue.add(Notification(FRIEND_REQUEST, 'alice@alumchat.xyz'))
        assert len(queue) == 1

    def test_inviter_does_not_affect_identity(self):
        queue = NotificationQueue()
        queue.add(Notification(GROUP_INVITE, ROOM, inviter='bob@alumchat.xyz'))
        assert not queue.add(Notification(GROUP_INVITE, ROOM, inviter='carol@alumchat.xyz'))

    def test_remove_missing(self):
        assert NotificationQueue().remove(FRIEND_REQUEST, 'nobody@alumchat.xyz') is None

    def test_text(self):
        assert Notification(FRIEND_REQUEST, 'alice@alumchat.xyz').text == 'New friend request from: alice'
        assert Notification(GROUP_INVITE, ROOM).text == 'New group invite from: room'


class TestFriendRequests:

    @pytest.mark.asyncio
    async def test_request_is_listed_once(self, online, transports):
        seen = []
        online.on_notification_callback = seen.append
        transports.last.push(subscribe_from('alice@alumchat.xyz'))
        transports.last.push(subscribe_from('alice@alumchat.xyz'))

        assert online.get_contact_requests() == ['New friend request from: alice']
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_accept_request(self, online, transports):
        transports.last.push(subscribe_from('alice@alumchat.xyz'))
        await online.handle_contact_request('alice@alumchat.xyz', accept=True)

        reply = transports.last.sent[-1]
        assert reply.type == 'subscribed'
        assert reply.to == 'alice@alumchat.xyz'
        assert online.get_contact_requests() == []

    @pytest.mark.asyncio
    async def test_reject_request(self, online, transports):
        transports.last.push(subscribe_from('alice@alumchat.xyz'))
        await online.handle_contact_request('alice', accept=False)

        assert transports.last.sent[-1].type == 'unsubscribed'
        assert online.get_contact_requests() == []

    @pytest.mark.asyncio
    async def test_resolving_unknown_request_only_sends_presence(self, online, transports):
        transports.last.push(subscribe_from('alice@alumchat.xyz'))
        await online.handle_contact_request('carol', accept=True)

        assert transports.last.sent[-1].to == 'carol@alumchat.xyz'
        assert online.get_contact_requests() == ['New friend request from: alice']

    @pytest.mark.asyncio
    async def test_logout_clears_pending_requests(self, online, transports):
        transports.last.push(subscribe_from('alice@alumchat.xyz'))
        await online.logout()
        assert online.get_notifications() == []


class TestGroupInvites:

    @pytest.mark.asyncio
    async def test_invite_is_listed(self, online, transports):
        transports.last.push(mediated_invite())
        transports.last.push(subscribe_from('alice@alumchat.xyz'))

        assert online.get_invite_requests() == ['New group invite from: room']
        assert online.get_notifications() == [
            'New group invite from: room',
            'New friend request from: alice',
        ]

    @pytest.mark.asyncio
    async def test_direct_invite_is_listed(self, online, transports):
        transports.last.push(element(
            'message', {'from': 'bob@alumchat.xyz/laptop'},
            children=[element('x', {'jid': ROOM}, xmlns=NS_CONFERENCE)]))
        assert online.get_invite_requests() == ['New group invite from: room']

    @pytest.mark.asyncio
    async def test_direct_invite_with_chat_body_is_listed(self, online, transports):
        transports.last.push(element(
            'message', {'from': 'bob@alumchat.xyz/laptop', 'type': 'chat'},
            children=[element('body', text=f'Join me in {ROOM}'),
                      element('x', {'jid': ROOM}, xmlns=NS_CONFERENCE)]))
        assert online.get_invite_requests() == ['New group invite from: room']

    @pytest.mark.asyncio
    async def test_decline_goes_to_inviter(self, online, transports):
        transports.last.push(mediated_invite())
        await online.handle_group_invite('room', accept=False)

        decline = transports.last.sent[-1]
        assert decline.to == ROOM
        assert decline.find('x', NS_MUC_USER).find('decline').get('to') == 'bob@alumchat.xyz'
        assert online.get_invite_requests() == []

    @pytest.mark.asyncio
    async def test_accept_joins_room(self, online, transports):
        transports.last.push(mediated_invite())
        await online.handle_group_invite(ROOM, accept=True)

        join = transports.last.sent[0]
        assert join.name == 'presence'
        assert join.to == f'{ROOM}/me'
        assert join.find('x', NS_MUC) is not None
        assert online.get_invite_requests() == []
        assert ROOM in online.joined_rooms

    @pytest.mark.asyncio
    async def test_invite_to_joined_room_is_ignored(self, online, transports):
        await online.join_group('room')
        transports.last.push(mediated_invite())
        assert online.get_invite_requests() == []
