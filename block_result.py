"""
Block Payload Decoder
Turns the node's JSON block and block-results payloads into typed structures.
Anything malformed raises PayloadDecodeError: a block that cannot be decoded
must stop the crawler, it is never skipped.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from models import packet_id

logger = logging.getLogger(__name__)

INNER_TX_HASH_KEY = "inner-tx-hash"

SEND_PACKET_EVENT = "send_packet"
RECV_PACKET_EVENT = "recv_packet"
PACKET_EVENTS = (SEND_PACKET_EVENT, RECV_PACKET_EVENT)


class PayloadDecodeError(Exception):
    """Block or block-results payload is not decodable"""


# ==================== EVENTS ====================


@dataclass(frozen=True)
class FungibleTokenPacket:
    """ICS-20 packet data"""

    denom: str
    amount: Decimal
    sender: str
    receiver: str
    memo: str = ""


@dataclass(frozen=True)
class IbcPacket:
    sequence: str
    source_port: str
    source_channel: str
    dest_port: str
    dest_channel: str
    timeout_timestamp: int
    timeout_height: str
    data: str

    def packet_id(self) -> str:
        return packet_id(
            self.source_port,
            self.source_channel,
            self.dest_port,
            self.dest_channel,
            self.sequence,
        )

    def as_fungible_token_packet(self) -> Optional[FungibleTokenPacket]:
        """Parse the packet data as ICS-20, None for any other application"""
        try:
            data = json.loads(self.data)
            return FungibleTokenPacket(
                denom=data["denom"],
                amount=Decimal(str(data["amount"])),
                sender=data["sender"],
                receiver=data["receiver"],
                memo=data.get("memo") or "",
            )
        except (ValueError, TypeError, KeyError, InvalidOperation):
            return None


@dataclass(frozen=True)
class Event:
    kind: str
    attributes: Dict[str, str]
    inner_tx_hash: Optional[str] = None
    packet: Optional[IbcPacket] = None

    @property
    def is_send_packet(self) -> bool:
        return self.kind == SEND_PACKET_EVENT

    @property
    def is_recv_packet(self) -> bool:
        return self.kind == RECV_PACKET_EVENT


def _parse_attributes(raw: Any) -> Dict[str, str]:
    if isinstance(raw, dict):
        return {str(key): str(value) for key, value in raw.items()}
    if isinstance(raw, list):
        attributes = {}
        for attribute in raw:
            value = attribute.get("value")
            attributes[attribute["key"]] = "" if value is None else str(value)
        return attributes
    if raw is None:
        return {}
    raise PayloadDecodeError(f"Unexpected event attributes: {raw!r}")


def _parse_packet(kind: str, attributes: Dict[str, str]) -> IbcPacket:
    try:
        return IbcPacket(
            sequence=attributes["packet_sequence"],
            source_port=attributes["packet_src_port"],
            source_channel=attributes["packet_src_channel"],
            dest_port=attributes["packet_dst_port"],
            dest_channel=attributes["packet_dst_channel"],
            timeout_timestamp=int(attributes.get("packet_timeout_timestamp") or 0),
            timeout_height=attributes.get("packet_timeout_height", ""),
            data=attributes.get("packet_data", ""),
        )
    except KeyError as e:
        raise PayloadDecodeError(f"{kind} event is missing attribute {e}") from e
    except ValueError as e:
        raise PayloadDecodeError(f"{kind} event has an invalid timeout: {e}") from e


def parse_event(raw: Dict[str, Any]) -> Event:
    """Parse one CometBFT event"""
    try:
        kind = raw["type"]
        attributes = _parse_attributes(raw.get("attributes"))
    except (KeyError, TypeError, AttributeError) as e:
        raise PayloadDecodeError(f"Malformed event {raw!r}: {e}") from e

    inner_tx_hash = attributes.get(INNER_TX_HASH_KEY) or None
    packet = _parse_packet(kind, attributes) if kind in PACKET_EVENTS else None
    return Event(
        kind=kind,
        attributes=attributes,
        inner_tx_hash=inner_tx_hash.lower() if inner_tx_hash else None,
        packet=packet,
    )


# ==================== TRANSACTIONS ====================


@dataclass(frozen=True)
class TxResult:
    """Execution result of one wrapper"""

    code: int
    gas_used: Optional[int]
    batch: Dict[str, int] = field(default_factory=dict)

    def inner_code(self, inner_hash: str) -> Optional[int]:
        return self.batch.get(inner_hash)


@dataclass(frozen=True)
class RawInnerTx:
    hash: str
    code_hash: Optional[str]
    data: bytes
    memo: Optional[str]
    extra_sections: Dict[str, str]
    notes: int


@dataclass(frozen=True)
class RawWrapperTx:
    hash: str
    fee_payer: Optional[str]
    fee_token: Optional[str]
    gas_limit: int
    amount_per_gas_unit: Optional[str]
    atomic: bool
    signatures: int
    size: int
    batch: List[RawInnerTx]


@dataclass(frozen=True)
class BlockResult:
    height: int
    end_events: List[Event]
    tx_results: List[TxResult]


@dataclass(frozen=True)
class Block:
    height: int
    timestamp: datetime
    txs: List[RawWrapperTx]
    result: BlockResult
    epoch: Optional[int] = None


def _decode_base64(value: Optional[str]) -> bytes:
    if not value:
        return b""
    return base64.b64decode(value, validate=True)


def _parse_inner(raw: Dict[str, Any]) -> RawInnerTx:
    code_hash = raw.get("code_hash")
    return RawInnerTx(
        hash=raw["hash"].lower(),
        code_hash=code_hash.lower() if code_hash else None,
        data=_decode_base64(raw.get("data")),
        memo=raw.get("memo"),
        extra_sections=dict(raw.get("extra_sections") or {}),
        notes=int(raw.get("notes") or 0),
    )


def _parse_wrapper(raw: Dict[str, Any]) -> RawWrapperTx:
    fee = raw.get("fee") or {}
    return RawWrapperTx(
        hash=raw["hash"].lower(),
        fee_payer=fee.get("fee_payer"),
        fee_token=fee.get("token"),
        gas_limit=int(fee.get("gas_limit") or 0),
        amount_per_gas_unit=fee.get("amount_per_gas_unit"),
        atomic=bool(raw.get("atomic", False)),
        signatures=int(raw.get("signatures") or 0),
        size=int(raw.get("size") or 0),
        batch=[_parse_inner(inner) for inner in raw.get("batch") or []],
    )


def _parse_tx_result(raw: Dict[str, Any]) -> TxResult:
    gas_used = raw.get("gas_used")
    batch = {
        inner_hash.lower(): int(result.get("code", 0))
        for inner_hash, result in (raw.get("batch") or {}).items()
    }
    return TxResult(
        code=int(raw.get("code", 0)),
        gas_used=int(gas_used) if gas_used not in (None, "") else None,
        batch=batch,
    )


def _parse_time(value: str) -> datetime:
    # Node timestamps carry nanoseconds, fromisoformat takes microseconds
    value = value.replace("Z", "+00:00")
    if "." in value:
        head, _, tail = value.partition(".")
        digits = tail[: len(tail) - len(tail.lstrip("0123456789"))]
        zone = tail[len(digits):]
        value = f"{head}.{digits[:6].ljust(6, '0')}{zone}"
    return datetime.fromisoformat(value)


def decode_block_result(payload: Dict[str, Any]) -> BlockResult:
    """Decode a ``block_results`` payload"""
    try:
        result = payload.get("result", payload)
        events = result.get("end_block_events") or result.get(
            "finalize_block_events"
        ) or []
        return BlockResult(
            height=int(result["height"]),
            end_events=[parse_event(event) for event in events],
            tx_results=[_parse_tx_result(tx) for tx in result.get("txs_results") or []],
        )
    except PayloadDecodeError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise PayloadDecodeError(f"Malformed block results: {e}") from e


def decode_block(
    block_payload: Dict[str, Any], results_payload: Dict[str, Any]
) -> Block:
    """
    Decode a block and its results into one typed Block

    Args:
        block_payload: Response of the node ``block`` endpoint
        results_payload: Response of the node ``block_results`` endpoint

    Returns:
        Block with wrappers aligned to their execution results

    Raises:
        PayloadDecodeError: on any malformed or inconsistent payload
    """
    result = decode_block_result(results_payload)

    try:
        block = block_payload.get("result", block_payload).get("block", {})
        header = block["header"]
        height = int(header["height"])
        timestamp = _parse_time(header["time"])
        epoch = header.get("epoch")
        txs = [_parse_wrapper(tx) for tx in block.get("data", {}).get("txs") or []]
    except (KeyError, TypeError, ValueError, AttributeError, binascii.Error) as e:
        raise PayloadDecodeError(f"Malformed block: {e}") from e

    if height != result.height:
        raise PayloadDecodeError(
            f"Block height {height} does not match results height {result.height}"
        )
    if len(txs) != len(result.tx_results):
        raise PayloadDecodeError(
            f"Block {height} has {len(txs)} txs but {len(result.tx_results)} results"
        )

    return Block(
        height=height,
        timestamp=timestamp,
        txs=txs,
        result=result,
        epoch=int(epoch) if epoch is not None else None,
    )
