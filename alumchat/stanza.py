"""
Immutable stanza model and stanza builders.

A Stanza is a frozen tree of (name, attributes, children, text, namespace).
Builders return new values and never mutate their inputs; the transports
turn them into XML on the wire (see alumchat.transport.xml).
"""

import base64
import uuid
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, List, Optional, Tuple


# Namespaces
NS_CLIENT = 'jabber:client'
NS_STREAM = 'http://etherx.jabber.org/streams'
NS_STANZAS = 'urn:ietf:params:xml:ns:xmpp-stanzas'
NS_STREAMS = 'urn:ietf:params:xml:ns:xmpp-streams'
NS_ROSTER = 'jabber:iq:roster'
NS_REGISTER = 'jabber:iq:register'
NS_MUC = 'http://jabber.org/protocol/muc'
NS_MUC_USER = 'http://jabber.org/protocol/muc#user'
NS_MUC_OWNER = 'http://jabber.org/protocol/muc#owner'
NS_CONFERENCE = 'jabber:x:conference'
NS_DATA = 'jabber:x:data'
NS_DISCO_INFO = 'http://jabber.org/protocol/disco#info'
NS_MAM = 'urn:xmpp:mam:2'
NS_FORWARD = 'urn:xmpp:forward:0'
NS_DELAY = 'urn:xmpp:delay'
NS_RSM = 'http://jabber.org/protocol/rsm'
NS_SI = 'http://jabber.org/protocol/si'
NS_SI_FILE = 'http://jabber.org/protocol/si/profile/file-transfer'
NS_FEATURE_NEG = 'http://jabber.org/protocol/feature-neg'
NS_IBB = 'http://jabber.org/protocol/ibb'

SUBSCRIPTION_TYPES = frozenset({'subscribe', 'subscribed', 'unsubscribe', 'unsubscribed'})


@dataclass(frozen=True)
class Stanza:
    """
    One XML element (top-level stanza or any descendant).

    attrs is a tuple of (key, value) pairs so the whole tree stays hashable
    and immutable. xmlns is only set where the element declares a namespace
    different from its parent.
    """
    name: str
    attrs: Tuple[Tuple[str, str], ...] = ()
    children: Tuple['Stanza', ...] = ()
    text: Optional[str] = None
    xmlns: Optional[str] = None

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.attrs:
            if k == key:
                return v
        return default

    @property
    def attributes(self) -> Dict[str, str]:
        return dict(self.attrs)

    @property
    def type(self) -> Optional[str]:
        return self.get('type')

    @property
    def id(self) -> Optional[str]:
        return self.get('id')

    @property
    def sender(self) -> Optional[str]:
        return self.get('from')

    @property
    def to(self) -> Optional[str]:
        return self.get('to')

    def find(self, name: str, xmlns: Optional[str] = None) -> Optional['Stanza']:
        """First direct child with this name (and namespace, if given)."""
        for child in self.children:
            if child.name == name and (xmlns is None or child.xmlns == xmlns):
                return child
        return None

    def find_all(self, name: str, xmlns: Optional[str] = None) -> List['Stanza']:
        return [c for c in self.children
                if c.name == name and (xmlns is None or c.xmlns == xmlns)]

    def child_text(self, name: str, xmlns: Optional[str] = None) -> Optional[str]:
        child = self.find(name, xmlns)
        return child.text if child is not None else None

    def iter(self) -> Iterator['Stanza']:
        """Depth-first walk over this element and all descendants."""
        yield self
        for child in self.children:
            yield from child.iter()

    @property
    def body(self) -> Optional[str]:
        return self.child_text('body')

    @property
    def payload(self) -> Optional['Stanza']:
        """First child element that is not an <error/>; the iq query payload."""
        for child in self.children:
            if child.name != 'error':
                return child
        return None

    def with_attrs(self, **changes: Optional[str]) -> 'Stanza':
        """Copy of this stanza with attributes added, replaced or (value None) dropped."""
        current = dict(self.attrs)
        for key, value in changes.items():
            key = key.rstrip('_')  # from_ -> from
            if value is None:
                current.pop(key, None)
            else:
                current[key] = str(value)
        return replace(self, attrs=tuple(current.items()))


def element(name: str, attrs: Optional[Dict[str, object]] = None,
            children: Iterable[Stanza] = (), text: Optional[str] = None,
            xmlns: Optional[str] = None) -> Stanza:
    """Build a Stanza, dropping attributes whose value is None."""
    items = tuple((k, str(v)) for k, v in (attrs or {}).items() if v is not None)
    return Stanza(name=name, attrs=items, children=tuple(children), text=text, xmlns=xmlns)


def new_id(prefix: str = 'alumchat') -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


# ============================================================================
# JID helpers
# ============================================================================

def bare_jid(jid: Optional[str]) -> str:
    if not jid:
        return ''
    return jid.split('/', 1)[0]


def jid_resource(jid: Optional[str]) -> str:
    if not jid or '/' not in jid:
        return ''
    return jid.split('/', 1)[1]


def jid_node(jid: Optional[str]) -> str:
    bare = bare_jid(jid)
    return bare.split('@', 1)[0] if '@' in bare else ''


def jid_domain(jid: Optional[str]) -> str:
    bare = bare_jid(jid)
    return bare.split('@', 1)[1] if '@' in bare else bare


def qualify(name: str, domain: str) -> str:
    """'alice' -> 'alice@domain'; anything that already has a domain part is kept."""
    name = name.strip()
    return name if '@' in name else f"{name}@{domain}"


# ============================================================================
# Errors and replies
# ============================================================================

def error_condition(stanza: Stanza) -> Tuple[str, str, Optional[str]]:
    """(condition, type, text) of a stanza's <error/> child; ('undefined-condition', '', None) if absent."""
    err = stanza.find('error')
    if err is None:
        return 'undefined-condition', '', None
    condition = 'undefined-condition'
    text = None
    for child in err.children:
        if child.name == 'text':
            text = child.text
        elif child.xmlns in (NS_STANZAS, None) and condition == 'undefined-condition':
            condition = child.name
    return condition, err.get('type', ''), text


def iq_result(request: Stanza, children: Iterable[Stanza] = ()) -> Stanza:
    return element('iq', {'type': 'result', 'id': request.id, 'to': request.sender},
                   children=children)


def iq_error(request: Stanza, condition: str, error_type: str = 'cancel') -> Stanza:
    err = element('error', {'type': error_type},
                  children=[element(condition, xmlns=NS_STANZAS)])
    return element('iq', {'type': 'error', 'id': request.id, 'to': request.sender},
                   children=[err])


# ============================================================================
# Account (jabber:iq:register)
# ============================================================================

def register_account(username: str, password: str, email: Optional[str] = None) -> Stanza:
    fields = [element('username', text=username), element('password', text=password)]
    if email:
        fields.append(element('email', text=email))
    query = element('query', children=fields, xmlns=NS_REGISTER)
    return element('iq', {'type': 'set', 'id': new_id('reg')}, children=[query])


def remove_account() -> Stanza:
    query = element('query', children=[element('remove')], xmlns=NS_REGISTER)
    return element('iq', {'type': 'set', 'id': new_id('unreg')}, children=[query])


# ============================================================================
# Roster and presence
# ============================================================================

def roster_get() -> Stanza:
    return element('iq', {'type': 'get', 'id': new_id('roster')},
                   children=[element('query', xmlns=NS_ROSTER)])


def roster_set(jid: str, name: Optional[str] = None) -> Stanza:
    item = element('item', {'jid': jid, 'name': name})
    return element('iq', {'type': 'set', 'id': new_id('roster')},
                   children=[element('query', children=[item], xmlns=NS_ROSTER)])


def presence(to: Optional[str] = None, ptype: Optional[str] = None,
             show: Optional[str] = None, status: Optional[str] = None,
             children: Iterable[Stanza] = ()) -> Stanza:
    payload: List[Stanza] = []
    if show:
        payload.append(element('show', text=show))
    if status:
        payload.append(element('status', text=status))
    payload.extend(children)
    return element('presence', {'to': to, 'type': ptype}, children=payload)


def presence_probe(jid: str) -> Stanza:
    return presence(to=bare_jid(jid), ptype='probe')


def subscription(jid: str, ptype: str) -> Stanza:
    if ptype not in SUBSCRIPTION_TYPES:
        raise ValueError(f"Not a subscription presence type: {ptype}")
    return presence(to=bare_jid(jid), ptype=ptype)


# ============================================================================
# Messages
# ============================================================================

def chat_message(to: str, body: str) -> Stanza:
    return element('message', {'to': to, 'type': 'chat', 'id': new_id('msg')},
                   children=[element('body', text=body)])


def groupchat_message(room: str, body: str) -> Stanza:
    return element('message', {'to': bare_jid(room), 'type': 'groupchat', 'id': new_id('muc')},
                   children=[element('body', text=body)])


# ============================================================================
# Multi-User Chat (XEP-0045)
# ============================================================================

def muc_join(room: str, nick: str, history_max: Optional[int] = None) -> Stanza:
    x_children = []
    if history_max is not None:
        x_children.append(element('history', {'maxstanzas': history_max}))
    x = element('x', children=x_children, xmlns=NS_MUC)
    return presence(to=f"{bare_jid(room)}/{nick}", children=[x])


def muc_leave(room: str, nick: str) -> Stanza:
    return presence(to=f"{bare_jid(room)}/{nick}", ptype='unavailable')


def data_form(form_type: str, fields: Dict[str, str], xtype: str = 'submit') -> Stanza:
    items = [element('field', {'var': 'FORM_TYPE', 'type': 'hidden'},
                     children=[element('value', text=form_type)])]
    for var, value in fields.items():
        items.append(element('field', {'var': var}, children=[element('value', text=value)]))
    return element('x', {'type': xtype}, children=items, xmlns=NS_DATA)


def muc_owner_config(room: str, fields: Dict[str, str]) -> Stanza:
    form = data_form('http://jabber.org/protocol/muc#roomconfig', fields)
    query = element('query', children=[form], xmlns=NS_MUC_OWNER)
    return element('iq', {'type': 'set', 'to': bare_jid(room), 'id': new_id('muccfg')},
                   children=[query])


def muc_invite(room: str, invitee: str, reason: Optional[str] = None) -> Stanza:
    reason_el = [element('reason', text=reason)] if reason else []
    invite = element('invite', {'to': bare_jid(invitee)}, children=reason_el)
    x = element('x', children=[invite], xmlns=NS_MUC_USER)
    return element('message', {'to': bare_jid(room), 'id': new_id('inv')}, children=[x])


def muc_decline(room: str, inviter: Optional[str], reason: Optional[str] = None) -> Stanza:
    reason_el = [element('reason', text=reason)] if reason else []
    decline = element('decline', {'to': bare_jid(inviter) if inviter else None},
                      children=reason_el)
    x = element('x', children=[decline], xmlns=NS_MUC_USER)
    return element('message', {'to': bare_jid(room), 'id': new_id('decl')}, children=[x])


# ============================================================================
# Service discovery and archive (XEP-0030, XEP-0313)
# ============================================================================

def disco_info(to: str) -> Stanza:
    return element('iq', {'type': 'get', 'to': to, 'id': new_id('disco')},
                   children=[element('query', xmlns=NS_DISCO_INFO)])


def mam_query(to: Optional[str], query_id: str, with_jid: Optional[str] = None,
              max_messages: Optional[int] = None) -> Stanza:
    children: List[Stanza] = []
    if with_jid:
        children.append(data_form(NS_MAM, {'with': with_jid}))
    if max_messages:
        # before='' asks for the latest page
        children.append(element('set', children=[
            element('max', text=str(max_messages)),
            element('before'),
        ], xmlns=NS_RSM))
    query = element('query', {'queryid': query_id}, children=children, xmlns=NS_MAM)
    return element('iq', {'type': 'set', 'to': to, 'id': new_id('mam')}, children=[query])


# ============================================================================
# Stream initiation and in-band bytestreams (XEP-0095/0096, XEP-0047)
# ============================================================================

def si_file_offer(to: str, sid: str, name: str, size: int) -> Stanza:
    file_el = element('file', {'name': name, 'size': size}, xmlns=NS_SI_FILE)
    option = element('option', children=[element('value', text=NS_IBB)])
    field = element('field', {'var': 'stream-method', 'type': 'list-single'}, children=[option])
    form = element('x', {'type': 'form'}, children=[field], xmlns=NS_DATA)
    feature = element('feature', children=[form], xmlns=NS_FEATURE_NEG)
    si = element('si', {'id': sid, 'profile': NS_SI_FILE, 'mime-type': 'application/octet-stream'},
                 children=[file_el, feature], xmlns=NS_SI)
    return element('iq', {'type': 'set', 'to': to, 'id': new_id('si')}, children=[si])


def si_accept(request: Stanza, method: str = NS_IBB) -> Stanza:
    field = element('field', {'var': 'stream-method'}, children=[element('value', text=method)])
    form = element('x', {'type': 'submit'}, children=[field], xmlns=NS_DATA)
    feature = element('feature', children=[form], xmlns=NS_FEATURE_NEG)
    return iq_result(request, children=[element('si', children=[feature], xmlns=NS_SI)])


def si_chosen_method(reply: Stanza) -> Optional[str]:
    """Stream method the peer picked in its SI answer, if any."""
    for el in reply.iter():
        if el.name == 'field' and el.get('var') == 'stream-method':
            return el.child_text('value')
    return None


def ibb_open(to: str, sid: str, block_size: int) -> Stanza:
    op = element('open', {'sid': sid, 'block-size': block_size, 'stanza': 'iq'}, xmlns=NS_IBB)
    return element('iq', {'type': 'set', 'to': to, 'id': new_id('ibb')}, children=[op])


def ibb_data(to: str, sid: str, seq: int, chunk: bytes) -> Stanza:
    payload = base64.b64encode(chunk).decode('ascii')
    data = element('data', {'sid': sid, 'seq': seq % 65536}, text=payload, xmlns=NS_IBB)
    return element('iq', {'type': 'set', 'to': to, 'id': new_id('ibb')}, children=[data])


def ibb_close(to: str, sid: str) -> Stanza:
    close = element('close', {'sid': sid}, xmlns=NS_IBB)
    return element('iq', {'type': 'set', 'to': to, 'id': new_id('ibb')}, children=[close])
