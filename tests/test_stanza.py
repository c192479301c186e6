"""Tests for the stanza model, builders and the XML codec."""

import base64
import xml.etree.ElementTree as ET

import pytest

from alumchat.stanza import (
    NS_IBB, NS_MUC, NS_MUC_OWNER, NS_ROSTER, NS_STANZAS, bare_jid,
    chat_message, element, error_condition, ibb_data, iq_error, jid_domain,
    jid_node, jid_resource, muc_join, muc_owner_config, presence, qualify,
    roster_get, si_accept, si_chosen_method, si_file_offer, subscription,
)
from alumchat.transport.xml import from_element, serialize, to_element


class TestJidHelpers:

    def test_parts(self):
        jid = 'alice@alumchat.xyz/phone'
        assert bare_jid(jid) == 'alice@alumchat.xyz'
        assert jid_resource(jid) == 'phone'
        assert jid_node(jid) == 'alice'
        assert jid_domain(jid) == 'alumchat.xyz'

    def test_missing_values(self):
        assert bare_jid(None) == ''
        assert jid_resource('alice@alumchat.xyz') == ''
        assert jid_node('alumchat.xyz') == ''

    def test_qualify(self):
        assert qualify('bob', 'alumchat.xyz') == 'bob@alumchat.xyz'
        assert qualify(' bob@other.org ', 'alumchat.xyz') == 'bob@other.org'


class TestStanza:

    def test_element_drops_none_attributes(self):
        stanza = element('presence', {'to': None, 'type': 'probe'})
        assert stanza.attributes == {'type': 'probe'}

    def test_with_attrs_returns_new_value(self):
        original = element('message', {'to': 'bob@alumchat.xyz'})
        changed = original.with_attrs(from_='alice@alumchat.xyz', to=None)
        assert original.to == 'bob@alumchat.xyz'
        assert changed.sender == 'alice@alumchat.xyz'
        assert changed.to is None

    def test_stanza_is_frozen(self):
        stanza = element('iq')
        with pytest.raises(AttributeError):
            stanza.name = 'message'

    def test_ids_are_unique(self):
        assert roster_get().id != roster_get().id


class TestBuilders:

    def test_chat_message(self):
        msg = chat_message('bob@alumchat.xyz', 'hi')
        assert msg.type == 'chat'
        assert msg.body == 'hi'

    def test_presence_with_show_and_status(self):
        stanza = presence(show='away', status='lunch')
        assert stanza.child_text('show') == 'away'
        assert stanza.child_text('status') == 'lunch'
        assert stanza.type is None

    def test_subscription_rejects_other_types(self):
        with pytest.raises(ValueError):
            subscription('bob@alumchat.xyz', 'probe')

    def test_muc_join_targets_occupant(self):
        stanza = muc_join('room@conference.alumchat.xyz', 'me')
        assert stanza.to == 'room@conference.alumchat.xyz/me'
        assert stanza.find('x', NS_MUC) is not None

    def test_owner_config_form(self):
        iq = muc_owner_config('room@conference.alumchat.xyz', {'muc#roomconfig_membersonly': '1'})
        form = iq.find('query', NS_MUC_OWNER).find('x')
        fields = {f.get('var'): f.child_text('value') for f in form.find_all('field')}
        assert form.get('type') == 'submit'
        assert fields['muc#roomconfig_membersonly'] == '1'
        assert fields['FORM_TYPE'] == 'http://jabber.org/protocol/muc#roomconfig'

    def test_ibb_data_encodes_and_wraps_sequence(self):
        iq = ibb_data('alice@alumchat.xyz/phone', 'sid1', 65536, b'abc')
        data = iq.find('data', NS_IBB)
        assert data.get('seq') == '0'
        assert base64.b64decode(data.text) == b'abc'

    def test_si_offer_and_accept(self):
        offer = si_file_offer('alice@alumchat.xyz/phone', 'sid1', 'a.txt', 10)
        offer = offer.with_attrs(from_='me@alumchat.xyz/console')
        answer = si_accept(offer)
        assert answer.to == 'me@alumchat.xyz/console'
        assert si_chosen_method(answer) == NS_IBB

    def test_error_condition(self):
        request = roster_get().with_attrs(from_='me@alumchat.xyz/console')
        reply = iq_error(request, 'item-not-found')
        assert error_condition(reply) == ('item-not-found', 'cancel', None)

    def test_error_condition_without_error_child(self):
        assert error_condition(element('iq', {'type': 'error'}))[0] == 'undefined-condition'


class TestXmlCodec:

    def test_serialize_declares_namespace_once(self):
        text = serialize(roster_get().with_attrs(id='r1'))
        assert text == "<iq type=\"get\" id=\"r1\"><query xmlns=\"jabber:iq:roster\"/></iq>"

    def test_serialize_escapes_text(self):
        text = serialize(element('body', text='a < b & c'))
        assert text == '<body>a &lt; b &amp; c</body>'

    def test_parse_roster_result(self):
        xml = (
            "<iq xmlns='jabber:client' type='result' id='r1'>"
            "<query xmlns='jabber:iq:roster'>"
            "<item jid='alice@alumchat.xyz' name='Alice' subscription='both'/>"
            "</query></iq>"
        )
        stanza = from_element(ET.fromstring(xml))
        assert stanza.xmlns is None
        query = stanza.find('query', NS_ROSTER)
        assert query.find('item').get('name') == 'Alice'

    def test_parse_error_condition_namespace(self):
        xml = (
            "<iq xmlns='jabber:client' type='error' id='e1'>"
            "<error type='cancel'><conflict xmlns='urn:ietf:params:xml:ns:xmpp-stanzas'/></error>"
            "</iq>"
        )
        stanza = from_element(ET.fromstring(xml))
        assert stanza.find('error').children[0].xmlns == NS_STANZAS
        assert error_condition(stanza)[0] == 'conflict'

    def test_to_element_namespaces(self):
        elem = to_element(roster_get())
        assert elem.tag == '{jabber:client}iq'
        assert elem[0].tag == '{jabber:iq:roster}query'

    def test_to_element_then_parse_preserves_tree(self):
        original = muc_owner_config('room@conference.alumchat.xyz', {'muc#roomconfig_membersonly': '1'})
        assert from_element(to_element(original)) == original
