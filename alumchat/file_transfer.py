"""
File transfer over in-band bytestreams.

XEP-0095 stream initiation with the XEP-0096 file profile negotiates the
transfer, then XEP-0047 carries the file as base64 blocks in sequential iq
stanzas. Both directions are supported: send_file() offers and streams a
file, and inbound offers are answered and reassembled into the download
directory.
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from alumchat.errors import AlumChatError, StanzaError, TransferRejected
from alumchat.stanza import (
    NS_IBB, NS_SI, NS_SI_FILE, Stanza, bare_jid, ibb_close, ibb_data, ibb_open,
    iq_error, iq_result, jid_domain, new_id, qualify, si_accept, si_chosen_method,
    si_file_offer,
)

MAX_BLOCK_SIZE = 65535
MAX_PENDING_OFFERS = 8


@dataclass
class FileTransferSession:
    """State of one transfer; lives from the offer until close."""
    sid: str
    peer: str
    file_name: str
    size: int
    block_size: int = 0
    seq: int = 0
    opened: bool = False
    received: bytearray = field(default_factory=bytearray, repr=False)
    expiry: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


def safe_file_name(name: Optional[str]) -> str:
    """Strip directories and leading dots from a peer-supplied file name."""
    cleaned = Path(name or '').name.lstrip('.').strip()
    return cleaned or 'received-file'


def unique_path(directory: Path, name: str) -> Path:
    """directory/name, or directory/'stem (n).ext' if that already exists."""
    candidate = directory / name
    stem, suffix = Path(name).stem, Path(name).suffix
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate


class FileTransferMixin:
    """
    Mixin providing in-band file transfer.

    Requirements (provided by AlumChat):
    - self.settings: ClientSettings (block_size, download_dir, auto_accept_files, open_timeout, conference_domain)
    - self.session / self._require_session(): active Session
    - self.resources: Dict[str, str] last seen full JID per bare JID
    - self._incoming_transfers: Dict[str, FileTransferSession] keyed by sid
    - self.on_file_received_callback: Optional callable(from_jid, path)
    - self.logger: Logger instance
    """

    _incoming_transfers: Dict[str, FileTransferSession]
    on_file_received_callback: Optional[Callable[[str, Path], None]]

    def _file_target(self, jid: str) -> str:
        """Full JID to stream to: as given, or the contact's last seen resource."""
        if '/' in jid:
            return jid
        return self.resources.get(bare_jid(jid), jid)

    async def send_file(self, jid: str, path) -> str:
        """
        Send a file to a contact.

        Args:
            jid: Contact JID (bare JIDs go to the last seen resource)
            path: Local file path

        Returns:
            Stream ID (sid) of the completed transfer

        Raises:
            FileNotFoundError: path does not exist
            ValueError: jid is a group chat
            TransferRejected: Peer declined the offer or the stream
        """
        session = self._require_session()
        dispatcher = session.dispatcher
        file_path = Path(path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        target = self._file_target(qualify(jid, session.domain))
        if jid_domain(target) == self.settings.conference_domain:
            raise ValueError("File transfer to group chats is not supported")

        data = await asyncio.get_running_loop().run_in_executor(None, file_path.read_bytes)
        transfer = FileTransferSession(
            sid=new_id('sid'),
            peer=target,
            file_name=file_path.name,
            size=len(data),
            block_size=self.settings.block_size,
        )
        self.logger.info(f"Offering {transfer.file_name} ({transfer.size} bytes) to {target}")

        try:
            reply = await dispatcher.request(
                si_file_offer(target, transfer.sid, transfer.file_name, transfer.size))
        except StanzaError as e:
            raise TransferRejected(f"{target} declined {transfer.file_name}: {e}") from e
        method = si_chosen_method(reply)
        if method != NS_IBB:
            raise TransferRejected(f"{target} chose unsupported stream method {method!r}")

        try:
            await dispatcher.request(ibb_open(target, transfer.sid, transfer.block_size))
        except StanzaError as e:
            raise TransferRejected(f"{target} refused the bytestream: {e}") from e
        transfer.opened = True

        try:
            for offset in range(0, transfer.size, transfer.block_size):
                chunk = data[offset:offset + transfer.block_size]
                await dispatcher.request(ibb_data(target, transfer.sid, transfer.seq, chunk))
                transfer.seq += 1
        except AlumChatError as e:
            self.logger.error(f"Transfer {transfer.sid} failed at block {transfer.seq}: {e}")
            try:
                await dispatcher.send(ibb_close(target, transfer.sid))
            except AlumChatError as close_error:
                self.logger.debug(f"Close after failure not sent: {close_error}")
            raise

        await dispatcher.request(ibb_close(target, transfer.sid))
        self.logger.info(f"Sent {transfer.file_name} to {target} in {transfer.seq} blocks")
        return transfer.sid

    # ========================================================================
    # Inbound
    # ========================================================================

    async def _on_si_request(self, stanza: Stanza) -> None:
        si = stanza.find('si', NS_SI)
        file_el = si.find('file', NS_SI_FILE) if si is not None else None
        if stanza.type != 'set' or file_el is None or not si.get('id'):
            await self._send(iq_error(stanza, 'bad-request', 'modify'))
            return

        methods = {el.text for el in si.iter() if el.name == 'value'}
        if NS_IBB not in methods:
            await self._send(iq_error(stanza, 'bad-request', 'modify'))
            return

        if not self.settings.auto_accept_files:
            self.logger.info(f"Declined file offer {file_el.get('name')} from {stanza.sender}")
            await self._send(iq_error(stanza, 'forbidden'))
            return

        pending = sum(1 for t in self._incoming_transfers.values() if not t.opened)
        if pending >= MAX_PENDING_OFFERS:
            self.logger.warning(f"Refused file offer from {stanza.sender}: {pending} offers not yet opened")
            await self._send(iq_error(stanza, 'resource-constraint', 'wait'))
            return

        try:
            size = int(file_el.get('size') or 0)
        except ValueError:
            size = 0
        transfer = FileTransferSession(
            sid=si.get('id'),
            peer=stanza.sender,
            file_name=safe_file_name(file_el.get('name')),
            size=size,
        )
        transfer.expiry = asyncio.get_running_loop().call_later(
            self.settings.open_timeout, self._expire_offer, transfer)
        self._incoming_transfers[transfer.sid] = transfer
        self.logger.info(f"Accepting {transfer.file_name} ({size} bytes) from {stanza.sender}")
        await self._send(si_accept(stanza))

    def _expire_offer(self, transfer: FileTransferSession) -> None:
        if self._incoming_transfers.get(transfer.sid) is transfer and not transfer.opened:
            del self._incoming_transfers[transfer.sid]
            self.logger.warning(f"Transfer {transfer.sid} from {transfer.peer} never opened, dropped")

    async def _on_ibb_request(self, stanza: Stanza) -> None:
        payload = stanza.payload
        transfer = self._incoming_transfers.get(payload.get('sid') or '')
        if stanza.type != 'set' or transfer is None or transfer.peer != stanza.sender:
            await self._send(iq_error(stanza, 'item-not-found'))
            return

        if payload.name == 'open':
            try:
                block_size = int(payload.get('block-size') or 0)
            except ValueError:
                block_size = 0
            if not 0 < block_size <= MAX_BLOCK_SIZE:
                await self._send(iq_error(stanza, 'resource-constraint', 'modify'))
                return
            if transfer.expiry is not None:
                transfer.expiry.cancel()
            transfer.block_size = block_size
            transfer.opened = True
            await self._send(iq_result(stanza))

        elif payload.name == 'data':
            if not transfer.opened or payload.get('seq') != str(transfer.seq % 65536):
                self.logger.warning(f"Transfer {transfer.sid}: unexpected block "
                                    f"{payload.get('seq')} (expected {transfer.seq % 65536}), aborting")
                self._incoming_transfers.pop(transfer.sid, None)
                await self._send(iq_error(stanza, 'unexpected-request'))
                return
            try:
                chunk = base64.b64decode(payload.text or '', validate=True)
            except (binascii.Error, ValueError):
                self._incoming_transfers.pop(transfer.sid, None)
                await self._send(iq_error(stanza, 'bad-request', 'modify'))
                return
            if transfer.size and len(transfer.received) + len(chunk) > transfer.size:
                self.logger.warning(f"Transfer {transfer.sid}: data exceeds the offered "
                                    f"{transfer.size} bytes, aborting")
                self._incoming_transfers.pop(transfer.sid, None)
                await self._send(iq_error(stanza, 'not-acceptable'))
                return
            transfer.received.extend(chunk)
            transfer.seq += 1
            await self._send(iq_result(stanza))

        elif payload.name == 'close':
            self._incoming_transfers.pop(transfer.sid, None)
            await self._send(iq_result(stanza))
            await self._store_received(transfer)

        else:
            await self._send(iq_error(stanza, 'feature-not-implemented'))

    async def _store_received(self, transfer: FileTransferSession) -> Path:
        if transfer.size and len(transfer.received) != transfer.size:
            self.logger.warning(f"Transfer {transfer.sid}: got {len(transfer.received)} of "
                                f"{transfer.size} bytes")
        directory = Path(self.settings.download_dir)
        directory.mkdir(parents=True, exist_ok=True)
        target = unique_path(directory, transfer.file_name)
        await asyncio.get_running_loop().run_in_executor(
            None, target.write_bytes, bytes(transfer.received))
        sender = bare_jid(transfer.peer)
        self.logger.info(f"Received {target.name} from {sender} ({len(transfer.received)} bytes)")
        if self.on_file_received_callback:
            try:
                self.on_file_received_callback(sender, target)
            except Exception as e:
                self.logger.error(f"Error in file received callback: {e}")
        return target
