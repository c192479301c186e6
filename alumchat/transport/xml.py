"""
Wire codec between Stanza values and XML.

Both transports share this: the slixmpp transport converts to and from
ElementTree elements, the raw registration stream writes serialized text.
"""

import xml.etree.ElementTree as ET
from typing import Optional, Tuple
from xml.sax.saxutils import escape as xml_escape, quoteattr

from alumchat.stanza import NS_CLIENT, Stanza

XML_NS = 'http://www.w3.org/XML/1998/namespace'


def split_tag(tag: str) -> Tuple[Optional[str], str]:
    """'{ns}name' -> ('ns', 'name'); 'name' -> (None, 'name')."""
    if tag.startswith('{'):
        ns, _, name = tag[1:].partition('}')
        return ns, name
    return None, tag


def _attr_name(key: str) -> str:
    ns, name = split_tag(key)
    if ns == XML_NS:
        return f"xml:{name}"
    return name


def from_element(elem: ET.Element, parent_ns: str = NS_CLIENT) -> Stanza:
    """Convert a parsed element tree into an immutable Stanza."""
    ns, name = split_tag(elem.tag)
    ns = ns or parent_ns
    text = elem.text.strip() if elem.text and elem.text.strip() else None
    if text is not None and name in ('body', 'status', 'text', 'reason'):
        text = elem.text  # keep whitespace where it carries meaning
    return Stanza(
        name=name,
        attrs=tuple((_attr_name(k), v) for k, v in elem.attrib.items()),
        children=tuple(from_element(child, ns) for child in elem),
        text=text,
        xmlns=ns if ns != parent_ns else None,
    )


def to_element(stanza: Stanza, parent_ns: str = NS_CLIENT) -> ET.Element:
    """Convert a Stanza into a namespaced ElementTree element."""
    ns = stanza.xmlns or parent_ns
    elem = ET.Element(f"{{{ns}}}{stanza.name}")
    for key, value in stanza.attrs:
        if key.startswith('xml:'):
            key = f"{{{XML_NS}}}{key[4:]}"
        elem.set(key, value)
    if stanza.text is not None:
        elem.text = stanza.text
    for child in stanza.children:
        elem.append(to_element(child, ns))
    return elem


def serialize(stanza: Stanza, parent_ns: str = NS_CLIENT) -> str:
    """Serialize a Stanza to XML text, declaring xmlns only where it changes."""
    parts = [f"<{stanza.name}"]
    if stanza.xmlns and stanza.xmlns != parent_ns:
        parts.append(f" xmlns={quoteattr(stanza.xmlns)}")
    for key, value in stanza.attrs:
        parts.append(f" {key}={quoteattr(value)}")
    if stanza.text is None and not stanza.children:
        parts.append("/>")
        return ''.join(parts)
    parts.append(">")
    if stanza.text is not None:
        parts.append(xml_escape(stanza.text))
    ns = stanza.xmlns or parent_ns
    for child in stanza.children:
        parts.append(serialize(child, ns))
    parts.append(f"</{stanza.name}>")
    return ''.join(parts)
