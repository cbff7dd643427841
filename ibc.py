"""
IBC Packet Correlation
Extracts packet sends, their acknowledgements/timeouts and token flows from
one block. Needs the complete set of end-block events of the block.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import re
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import bech32

from block_result import BlockResult, IbcPacket
from config import config
from models import (
    IbcAck,
    IbcAckStatus,
    IbcMessageData,
    IbcSequence,
    IbcTokenAction,
    IbcTokenFlow,
    InnerTransaction,
    TransactionBatch,
    TransactionKindName,
)
from tx_decoder import IbcMessageTypes, packet_id_fields

logger = logging.getLogger(__name__)

CHANNEL_ID_PATTERN = re.compile(r"^channel-\d+$")
ADDRESS_CHECKSUM_LENGTH = 6
# Implicit (0) and established (1) accounts sit below, protocol accounts at or above
FIRST_INTERNAL_DISCRIMINANT = 2


class IbcCorrelationError(Exception):
    """A packet send could not be tied to the transaction that sent it"""


class DenomError(ValueError):
    """Denomination cannot be expressed in local canonical form"""


# ==================== ADDRESSES & DENOMS ====================


def is_native_address(denom: str, prefix: Optional[str] = None) -> bool:
    prefix = prefix or config.NATIVE_ADDRESS_PREFIX
    body = denom[len(prefix):]
    return (
        denom.startswith(prefix)
        and bool(body)
        and all(ch in bech32.CHARSET for ch in body)
    )


def address_discriminant(address: str, prefix: Optional[str] = None) -> Optional[int]:
    """
    Leading byte of a native address, the kind of account it names

    Only the data part is read, the checksum is not verified.
    """
    prefix = prefix or config.NATIVE_ADDRESS_PREFIX
    if not is_native_address(address, prefix):
        return None
    body = address[len(prefix):]
    if len(body) <= ADDRESS_CHECKSUM_LENGTH + 1:
        return None
    data = [bech32.CHARSET.find(ch) for ch in body[:-ADDRESS_CHECKSUM_LENGTH]]
    decoded = bech32.convertbits(data, 5, 8)
    return decoded[0] if decoded else None


def is_internal_address(
    address: str,
    internal_addresses: Optional[Iterable[str]] = None,
    prefix: Optional[str] = None,
) -> bool:
    """Protocol accounts can send packets without any user inner tx"""
    known = config.INTERNAL_ADDRESSES if internal_addresses is None else internal_addresses
    if address in set(known):
        return True
    discriminant = address_discriminant(address, prefix)
    return discriminant is not None and discriminant >= FIRST_INTERNAL_DISCRIMINANT


def split_trace(denom: str) -> Tuple[List[Tuple[str, str]], str]:
    """
    Split an ICS-20 denom into its trace path and base denom

    ``transfer/channel-1/transfer/channel-7/uosmo`` gives
    ``([("transfer", "channel-1"), ("transfer", "channel-7")], "uosmo")``
    """
    if not denom:
        raise DenomError("Empty denom")
    segments = denom.split("/")
    if any(segment == "" for segment in segments):
        raise DenomError(f"Empty path segment in denom {denom!r}")

    trace = []
    while len(segments) > 2 and CHANNEL_ID_PATTERN.match(segments[1]):
        trace.append((segments[0], segments[1]))
        segments = segments[2:]
    return trace, "/".join(segments)


def ibc_token(denom: str) -> str:
    """Local denom of a token that carries a trace path"""
    return "ibc/" + hashlib.sha256(denom.encode("utf-8")).hexdigest().upper()


def ibc_denom_sent(denom: str, prefix: Optional[str] = None) -> str:
    """Local form of a denom leaving this chain"""
    if is_native_address(denom, prefix):
        return denom
    return ibc_token(denom)


def ibc_denom_received(
    denom: str,
    source_port: str,
    source_channel: str,
    dest_port: str,
    dest_channel: str,
    prefix: Optional[str] = None,
) -> str:
    """
    Local form of a denom arriving on this chain

    Raises:
        DenomError: if the denom cannot be rewritten
    """
    trace, base = split_trace(denom)
    if not base:
        raise DenomError(f"Missing base denom in {denom!r}")

    if trace and trace[0] == (source_port, source_channel):
        # Token is returning: drop the hop the counterparty added
        remaining = trace[1:]
        if not remaining:
            if not is_native_address(base, prefix):
                raise DenomError(f"Returning denom {base!r} is not a local token")
            return base
        path = "/".join(f"{port}/{channel}" for port, channel in remaining)
        return ibc_token(f"{path}/{base}")

    return ibc_token(f"{dest_port}/{dest_channel}/{denom}")


# ==================== PACKET SENDS ====================


class LegacyTxIdCursor:
    """
    Ordered ids of the successful IBC-sending inner txs of a block

    Older chain versions did not attach the inner tx hash to send events, each
    such event maps 1:1, in order, to the next id of this cursor.
    """

    def __init__(self, txs: Sequence[TransactionBatch]):
        self._ids = [
            inner.tx_id
            for wrapper, inners in txs
            for inner in inners
            if inner.is_sent_ibc() and inner.was_successful(wrapper)
        ]
        self._position = 0

    @property
    def remaining(self) -> int:
        return len(self._ids) - self._position

    def next(self) -> str:
        if self._position >= len(self._ids):
            raise IbcCorrelationError(
                "IBC sent packet should have a corresponding tx, "
                f"all {len(self._ids)} candidate txs are already assigned"
            )
        tx_id = self._ids[self._position]
        self._position += 1
        return tx_id


def synthetic_tx_id(packet: IbcPacket) -> str:
    return hashlib.sha256(packet.packet_id().encode("utf-8")).hexdigest().lower()


def get_ibc_packets(
    block_result: BlockResult,
    txs: Sequence[TransactionBatch],
    internal_addresses: Optional[Iterable[str]] = None,
) -> List[IbcSequence]:
    """
    Build one IbcSequence per packet sent in the block

    Args:
        block_result: Decoded block results, end events in emission order
        txs: Classified batches of the same block
        internal_addresses: Protocol accounts, the configured ones by default

    Raises:
        IbcCorrelationError: when a legacy send event has no tx left to claim
    """
    legacy_ids = LegacyTxIdCursor(txs)
    sequences = []

    for event in block_result.end_events:
        if not event.is_send_packet or event.packet is None:
            continue
        packet = event.packet

        if event.inner_tx_hash:
            tx_id = event.inner_tx_hash
        else:
            token_packet = packet.as_fungible_token_packet()
            if token_packet is not None and is_internal_address(
                token_packet.sender, internal_addresses
            ):
                # No inner tx exists for protocol transfers, id the packet itself
                tx_id = synthetic_tx_id(packet)
                logger.debug(
                    f"Packet {packet.packet_id()} sent by {token_packet.sender}, "
                    f"using synthetic id {tx_id}"
                )
            else:
                tx_id = legacy_ids.next()

        sequences.append(
            IbcSequence(
                sequence_number=packet.sequence,
                source_port=packet.source_port,
                dest_port=packet.dest_port,
                source_channel=packet.source_channel,
                dest_channel=packet.dest_channel,
                timeout=packet.timeout_timestamp,
                tx_id=tx_id,
            )
        )

    return sequences


# ==================== ACKS & TIMEOUTS ====================


def decode_ack_status(acknowledgement: Any) -> IbcAckStatus:
    """Read an acknowledgement as a ``{"result": ...}`` / ``{"error": ...}`` envelope"""
    if not acknowledgement or not isinstance(acknowledgement, str):
        return IbcAckStatus.UNKNOWN
    try:
        raw = base64.b64decode(acknowledgement, validate=True)
    except (ValueError, binascii.Error):
        raw = acknowledgement.encode("utf-8")

    try:
        status = json.loads(raw)
    except ValueError:
        return IbcAckStatus.UNKNOWN

    if isinstance(status, dict):
        if "result" in status:
            return IbcAckStatus.SUCCESS
        if "error" in status:
            return IbcAckStatus.FAIL
    return IbcAckStatus.UNKNOWN


def _packet_ack(message: dict, status: IbcAckStatus) -> IbcAck:
    # Envelopes reaching here passed classification, the packet is complete
    packet = packet_id_fields(message)
    return IbcAck(
        sequence_number=packet["sequence"],
        source_port=packet["source_port"],
        dest_port=packet["destination_port"],
        source_channel=packet["source_channel"],
        dest_channel=packet["destination_channel"],
        status=status,
    )


def get_ibc_ack_packets(inner_txs: Iterable[InnerTransaction]) -> List[IbcAck]:
    """Acknowledgements and timeouts of packets this chain sent"""
    acks = []
    for tx in inner_txs:
        if tx.kind.name is not TransactionKindName.IBC_MSG:
            continue
        envelope = tx.kind.payload
        if not isinstance(envelope, IbcMessageData):
            continue

        if envelope.type_url == IbcMessageTypes.ACKNOWLEDGEMENT:
            status = decode_ack_status(envelope.message.get("acknowledgement"))
            acks.append(_packet_ack(envelope.message, status))
        elif envelope.type_url in IbcMessageTypes.PACKET_RESOLUTIONS:
            acks.append(_packet_ack(envelope.message, IbcAckStatus.TIMEOUT))
        # Receives record the counterparty's send, nothing to resolve here

    return acks


# ==================== TOKEN FLOWS ====================


def get_ibc_token_flows(
    block_result: BlockResult, prefix: Optional[str] = None
) -> List[IbcTokenFlow]:
    """Fungible token amounts leaving (withdraw) and entering (deposit) the chain"""
    flows = []
    for event in block_result.end_events:
        if event.packet is None:
            continue
        token_packet = event.packet.as_fungible_token_packet()
        if token_packet is None:
            continue

        if event.is_send_packet:
            action = IbcTokenAction.WITHDRAW
            denom = ibc_denom_sent(token_packet.denom, prefix)
        elif event.is_recv_packet:
            action = IbcTokenAction.DEPOSIT
            packet = event.packet
            try:
                denom = ibc_denom_received(
                    token_packet.denom,
                    packet.source_port,
                    packet.source_channel,
                    packet.dest_port,
                    packet.dest_channel,
                    prefix,
                )
            except DenomError as e:
                logger.debug(f"Failed to parse received IBC denom: {e}")
                continue
        else:
            continue

        flows.append(IbcTokenFlow(action=action, denom=denom, amount=token_packet.amount))

    return flows
