"""
IBC Packet Correlation Tests
"""

import base64
import hashlib
import json
from decimal import Decimal

import pytest

from block_result import BlockResult, parse_event
from checksums import ChecksumRegistry
from ibc import (
    DenomError,
    IbcCorrelationError,
    LegacyTxIdCursor,
    address_discriminant,
    decode_ack_status,
    get_ibc_ack_packets,
    get_ibc_packets,
    get_ibc_token_flows,
    ibc_denom_received,
    ibc_denom_sent,
    ibc_token,
    is_internal_address,
    is_native_address,
    split_trace,
)
from models import (
    Fee,
    IbcAckStatus,
    IbcMessageData,
    IbcTokenAction,
    InnerTransaction,
    TransactionExitStatus,
    TransactionKind,
    TransactionKindName,
    WrapperTransaction,
)
from tx_decoder import IbcMessageTypes, TransactionClassifier

PGF = "tnam1pgqqyqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqkhgajr"
NAM = "tnam1q9gr66cvu4hrzm0sd5kmlnjje82gs3xlfg3v6nu7"
ALICE = "tnam1qz4sdx5jlh909j44uz46pf29ty0ztftfzc98s8dx"
GOVERNANCE = "tnam1q5qqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqrw33g6"
IBC_HASH = "b2" * 32

APPLIED = TransactionExitStatus.APPLIED
REJECTED = TransactionExitStatus.REJECTED


def packet_event(
    kind="send_packet",
    sequence="1",
    src=("transfer", "channel-0"),
    dst=("transfer", "channel-0"),
    sender=ALICE,
    denom=NAM,
    amount="100",
    inner_tx_hash=None,
):
    attributes = {
        "packet_sequence": sequence,
        "packet_src_port": src[0],
        "packet_src_channel": src[1],
        "packet_dst_port": dst[0],
        "packet_dst_channel": dst[1],
        "packet_timeout_timestamp": "1730540000000000000",
        "packet_data": json.dumps(
            {"denom": denom, "amount": amount, "sender": sender, "receiver": "osmo1x"}
        ),
    }
    if inner_tx_hash:
        attributes["inner-tx-hash"] = inner_tx_hash
    return parse_event({"type": kind, "attributes": attributes})


def block_result(*events):
    return BlockResult(height=10, end_events=list(events), tx_results=[])


def wrapper(tx_id="ww", exit_code=APPLIED):
    return WrapperTransaction(
        tx_id=tx_id,
        index=0,
        fee=Fee(payer=ALICE, token=NAM, gas_limit=1000, gas_used=500, amount_per_gas_unit="1"),
        atomic=False,
        block_height=10,
        exit_code=exit_code,
        total_signatures=1,
        size=100,
    )


def inner(tx_id, kind=TransactionKindName.IBC_SEND_TRANSPARENT_TRANSFER, exit_code=APPLIED, payload=None):
    return InnerTransaction(
        tx_id=tx_id,
        wrapper_id="ww",
        index=0,
        kind=TransactionKind(kind, payload),
        data=b"",
        exit_code=exit_code,
    )


def ack_message(type_url, acknowledgement=None, sequence="4"):
    message = {
        "@type": type_url,
        "packet": {
            "sequence": sequence,
            "source_port": "transfer",
            "source_channel": "channel-0",
            "destination_port": "transfer",
            "destination_channel": "channel-9",
        },
    }
    if acknowledgement is not None:
        message["acknowledgement"] = acknowledgement
    return inner("ack", TransactionKindName.IBC_MSG, payload=IbcMessageData(type_url, message))


class TestPacketSends:
    """Test send_packet correlation to transaction ids"""

    def test_inner_tx_hash_attribute(self):
        sequences = get_ibc_packets(
            block_result(packet_event(inner_tx_hash="deadbeef")), [], internal_addresses=[PGF]
        )

        assert len(sequences) == 1
        assert sequences[0].tx_id == "deadbeef"
        assert sequences[0].timeout == 1730540000000000000

    def test_internal_sender_gets_synthetic_id(self):
        sequences = get_ibc_packets(
            block_result(packet_event(sender=PGF)), [], internal_addresses=[PGF]
        )

        expected = hashlib.sha256(b"transfer/channel-0/transfer/channel-0/1").hexdigest()
        assert sequences[0].tx_id == expected

    def test_unlisted_protocol_sender_gets_synthetic_id(self):
        txs = [(wrapper(), [inner("user")])]
        sequences = get_ibc_packets(
            block_result(packet_event(sender=GOVERNANCE, sequence="3")),
            txs,
            internal_addresses=[PGF],
        )

        expected = hashlib.sha256(b"transfer/channel-0/transfer/channel-0/3").hexdigest()
        assert sequences[0].tx_id == expected

    def test_legacy_event_takes_successful_sending_tx(self):

        txs = [(wrapper(), [inner("aa11")])]
        sequences = get_ibc_packets(block_result(packet_event()), txs, internal_addresses=[PGF])

        assert sequences[0].tx_id == "aa11"

    def test_legacy_ids_assigned_in_order(self):
        txs = [
            (wrapper(), [inner("first"), inner("failed", exit_code=REJECTED)]),
            (wrapper("w2"), [inner("bond", TransactionKindName.BOND), inner("second")]),
        ]
        sequences = get_ibc_packets(
            block_result(packet_event(sequence="1"), packet_event(sequence="2")),
            txs,
            internal_addresses=[PGF],
        )

        assert [sequence.tx_id for sequence in sequences] == ["first", "second"]

    def test_legacy_cursor_exhausted(self):
        txs = [(wrapper(exit_code=REJECTED), [inner("aa11")])]
        with pytest.raises(IbcCorrelationError):
            get_ibc_packets(block_result(packet_event()), txs, internal_addresses=[PGF])

    def test_mixed_events_only_consume_cursor_when_needed(self):
        txs = [(wrapper(), [inner("legacy")])]
        sequences = get_ibc_packets(
            block_result(
                packet_event(sequence="1", inner_tx_hash="abc"),
                packet_event(sequence="2", sender=PGF),
                packet_event(sequence="3"),
            ),
            txs,
            internal_addresses=[PGF],
        )

        assert sequences[0].tx_id == "abc"
        assert sequences[1].tx_id == hashlib.sha256(
            b"transfer/channel-0/transfer/channel-0/2"
        ).hexdigest()
        assert sequences[2].tx_id == "legacy"

    def test_recv_events_ignored(self):
        sequences = get_ibc_packets(
            block_result(packet_event(kind="recv_packet")), [], internal_addresses=[PGF]
        )
        assert sequences == []

    def test_cursor_remaining(self):
        cursor = LegacyTxIdCursor([(wrapper(), [inner("a"), inner("b")])])
        assert cursor.remaining == 2
        assert cursor.next() == "a"
        assert cursor.remaining == 1


class TestAcks:
    """Test acknowledgement and timeout extraction"""

    def encode(self, payload):
        return base64.b64encode(json.dumps(payload).encode()).decode()

    def test_success_ack(self):
        acks = get_ibc_ack_packets(
            [ack_message(IbcMessageTypes.ACKNOWLEDGEMENT, self.encode({"result": "AQ=="}))]
        )

        assert acks[0].status is IbcAckStatus.SUCCESS
        assert acks[0].packet_id() == "transfer/channel-0/transfer/channel-9/4"

    def test_error_ack(self):
        acks = get_ibc_ack_packets(
            [ack_message(IbcMessageTypes.ACKNOWLEDGEMENT, self.encode({"error": "denied"}))]
        )
        assert acks[0].status is IbcAckStatus.FAIL

    def test_raw_json_ack(self):
        assert decode_ack_status('{"result": "AQ=="}') is IbcAckStatus.SUCCESS

    def test_unreadable_ack(self):
        acks = get_ibc_ack_packets([ack_message(IbcMessageTypes.ACKNOWLEDGEMENT, "not json")])
        assert acks[0].status is IbcAckStatus.UNKNOWN
        assert decode_ack_status(self.encode({"other": 1})) is IbcAckStatus.UNKNOWN

    def test_timeouts(self):
        acks = get_ibc_ack_packets(
            [
                ack_message(IbcMessageTypes.TIMEOUT),
                ack_message(IbcMessageTypes.TIMEOUT_ON_CLOSE, sequence="5"),
            ]
        )
        assert [ack.status for ack in acks] == [IbcAckStatus.TIMEOUT, IbcAckStatus.TIMEOUT]

    def test_recv_packet_produces_nothing(self):
        assert get_ibc_ack_packets([ack_message(IbcMessageTypes.RECV_PACKET)]) == []

    def test_non_ibc_kinds_ignored(self):
        assert get_ibc_ack_packets([inner("x", TransactionKindName.BOND)]) == []

    def test_non_string_ack_is_unknown(self):
        acks = get_ibc_ack_packets(
            [ack_message(IbcMessageTypes.ACKNOWLEDGEMENT, {"result": "AQ=="})]
        )

        assert acks[0].status is IbcAckStatus.UNKNOWN
        assert decode_ack_status(["result"]) is IbcAckStatus.UNKNOWN

    def test_timeout_without_packet_identity_is_skipped(self):
        registry = ChecksumRegistry()
        registry.load({"tx_ibc.wasm": IBC_HASH})
        payload = {
            "type": "envelope",
            "message": {"@type": IbcMessageTypes.TIMEOUT, "packet": {"sequence": "1"}},
        }
        kind = TransactionClassifier(registry).classify(IBC_HASH, json.dumps(payload).encode())
        broken = inner("ack", kind.name, exit_code=REJECTED, payload=kind.payload)

        assert kind.is_unknown
        assert get_ibc_ack_packets([broken]) == []



class TestAddresses:
    """Test account kinds read from native addresses"""

    def test_discriminants(self):
        assert address_discriminant(ALICE, "tnam1") == 0
        assert address_discriminant(NAM, "tnam1") == 1
        assert address_discriminant(GOVERNANCE, "tnam1") == 5
        assert address_discriminant(PGF, "tnam1") == 10
        assert address_discriminant("tnam1pgq", "tnam1") is None
        assert address_discriminant("osmo1receiver", "tnam1") is None

    def test_internal_by_encoding(self):
        assert is_internal_address(GOVERNANCE, [], "tnam1")
        assert is_internal_address(PGF, [], "tnam1")
        assert not is_internal_address(ALICE, [], "tnam1")
        assert not is_internal_address(NAM, [], "tnam1")

    def test_configured_addresses_are_internal(self):
        assert is_internal_address("custom-account", ["custom-account"], "tnam1")


class TestDenoms:

    """Test local denom forms"""

    def test_native_address(self):
        assert is_native_address(NAM, "tnam1")
        assert not is_native_address("uatom", "tnam1")
        assert not is_native_address("tnam1", "tnam1")
        assert not is_native_address("tnam1INVALID", "tnam1")

    def test_split_trace(self):
        assert split_trace("transfer/channel-1/transfer/channel-7/uosmo") == (
            [("transfer", "channel-1"), ("transfer", "channel-7")],
            "uosmo",
        )
        assert split_trace("gamm/pool/1") == ([], "gamm/pool/1")

    def test_split_trace_rejects_empty_segments(self):
        with pytest.raises(DenomError):
            split_trace("transfer//uosmo")

    def test_sent_native_denom_unchanged(self):
        assert ibc_denom_sent(NAM, "tnam1") == NAM

    def test_sent_foreign_denom_hashed(self):
        denom = "transfer/channel-0/uosmo"
        expected = "ibc/" + hashlib.sha256(denom.encode()).hexdigest().upper()
        assert ibc_denom_sent(denom, "tnam1") == expected

    def test_received_foreign_denom_gets_local_hop(self):
        assert ibc_denom_received(
            "uosmo", "transfer", "channel-5", "transfer", "channel-0", "tnam1"
        ) == ibc_token("transfer/channel-0/uosmo")

    def test_received_returning_native_denom(self):
        assert (
            ibc_denom_received(
                f"transfer/channel-5/{NAM}", "transfer", "channel-5", "transfer", "channel-0", "tnam1"
            )
            == NAM
        )

    def test_received_returning_multi_hop_denom(self):
        assert ibc_denom_received(
            "transfer/channel-5/transfer/channel-2/uatom",
            "transfer",
            "channel-5",
            "transfer",
            "channel-0",
            "tnam1",
        ) == ibc_token("transfer/channel-2/uatom")

    def test_received_returning_unknown_base(self):
        with pytest.raises(DenomError):
            ibc_denom_received(
                "transfer/channel-5/uatom", "transfer", "channel-5", "transfer", "channel-0", "tnam1"
            )


class TestTokenFlows:
    """Test token flow extraction"""

    def test_send_is_withdraw(self):
        flows = get_ibc_token_flows(block_result(packet_event(amount="250")), "tnam1")

        assert len(flows) == 1
        assert flows[0].action is IbcTokenAction.WITHDRAW
        assert flows[0].denom == NAM
        assert flows[0].amount == Decimal(250)

    def test_recv_is_deposit(self):
        flows = get_ibc_token_flows(
            block_result(
                packet_event(
                    kind="recv_packet", src=("transfer", "channel-5"), denom="uosmo", sender="osmo1x"
                )
            ),
            "tnam1",
        )

        assert flows[0].action is IbcTokenAction.DEPOSIT
        assert flows[0].denom == ibc_token("transfer/channel-0/uosmo")

    def test_untranslatable_deposit_dropped(self):
        flows = get_ibc_token_flows(
            block_result(
                packet_event(kind="recv_packet", src=("transfer", "channel-5"), denom="transfer/channel-5/uatom"),
                packet_event(amount="7"),
            ),
            "tnam1",
        )

        assert len(flows) == 1
        assert flows[0].action is IbcTokenAction.WITHDRAW
        assert flows[0].amount == Decimal(7)

    def test_non_packet_events_ignored(self):
        event = parse_event({"type": "message", "attributes": {"action": "x"}})
        assert get_ibc_token_flows(block_result(event), "tnam1") == []
