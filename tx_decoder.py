"""
Transaction Classifier
Turns decoded inner transactions into typed transaction kinds, using the code
hash each one executes as its only identity
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from block_result import Block, RawInnerTx, RawWrapperTx, TxResult
from checksums import ChecksumRegistry
from config import config
from models import (
    AccountAmount,
    BondData,
    ClaimRewardsData,
    CommissionChangeData,
    ConsensusKeyChangeData,
    Fee,
    IbcMessageData,
    IbcTransferData,
    InnerTransaction,
    RedelegationData,
    TransactionBatch,
    TransactionExitStatus,
    TransactionKind,
    TransactionKindName,
    TransferData,
    UnbondData,
    VoteProposalData,
    WithdrawData,
    WrapperTransaction,
)

logger = logging.getLogger(__name__)


# ==================== IBC MESSAGE TYPES ====================


class IbcMessageTypes:
    """IBC messages the indexer looks inside of"""

    TRANSFER = "/ibc.applications.transfer.v1.MsgTransfer"
    RECV_PACKET = "/ibc.core.channel.v1.MsgRecvPacket"
    ACKNOWLEDGEMENT = "/ibc.core.channel.v1.MsgAcknowledgement"
    TIMEOUT = "/ibc.core.channel.v1.MsgTimeout"
    TIMEOUT_ON_CLOSE = "/ibc.core.channel.v1.MsgTimeoutOnClose"

    # Messages that settle a packet this chain sent
    PACKET_RESOLUTIONS = (ACKNOWLEDGEMENT, TIMEOUT, TIMEOUT_ON_CLOSE)

    @staticmethod
    def of(message: Dict[str, Any]) -> str:
        return message.get("@type", message.get("type_url", ""))


PACKET_ID_FIELDS = (
    "sequence",
    "source_port",
    "source_channel",
    "destination_port",
    "destination_channel",
)


def packet_id_fields(message: Dict[str, Any]) -> Dict[str, str]:
    """
    Identity of the packet an acknowledgement or timeout refers to

    Raises:
        KeyError: if a field is missing
        TypeError: if the packet or a field has the wrong shape
    """
    packet = message["packet"]
    if not isinstance(packet, dict):
        raise TypeError("IBC packet must be an object")

    fields = {}
    for name in PACKET_ID_FIELDS:
        value = packet[name]
        if isinstance(value, bool) or not isinstance(value, (str, int)) or value == "":
            raise TypeError(f"Invalid IBC packet field {name}: {value!r}")
        fields[name] = str(value)
    return fields


def decode_packet_data(packet: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Decode the base64 JSON data of a packet inside an IBC message"""
    data = packet.get("data")
    if not data:
        return None
    try:
        decoded = json.loads(base64.b64decode(data, validate=True))
    except (ValueError, binascii.Error):
        return None
    return decoded if isinstance(decoded, dict) else None


# ==================== CLASSIFIER ====================


class TransactionClassifier:
    """Classify inner transactions by the code they execute"""

    def __init__(self, registry: ChecksumRegistry, masp_address: Optional[str] = None):
        """
        Initialize transaction classifier

        Args:
            registry: Code hash registry used to name each transaction
            masp_address: Shielded pool account, decides the transfer kinds
        """
        self.registry = registry
        self.masp_address = masp_address or config.MASP_ADDRESS
        self._decoders: Dict[str, Callable[[Any], TransactionKind]] = {
            "tx_transfer": self._decode_transfer,
            "tx_ibc": self._decode_ibc,
            "tx_bond": self._decode_bond,
            "tx_redelegate": self._decode_redelegation,
            "tx_unbond": self._decode_unbond,
            "tx_withdraw": self._decode_withdraw,
            "tx_claim_rewards": self._decode_claim_rewards,
            "tx_vote_proposal": self._decode_vote_proposal,
            "tx_init_proposal": self._object_decoder(TransactionKindName.INIT_PROPOSAL),
            "tx_change_validator_metadata": self._object_decoder(
                TransactionKindName.CHANGE_METADATA
            ),
            "tx_change_validator_commission": self._decode_commission_change,
            "tx_become_validator": self._object_decoder(
                TransactionKindName.BECOME_VALIDATOR
            ),
            "tx_deactivate_validator": self._address_decoder(
                TransactionKindName.DEACTIVATE_VALIDATOR
            ),
            "tx_reactivate_validator": self._address_decoder(
                TransactionKindName.REACTIVATE_VALIDATOR
            ),
            "tx_unjail_validator": self._address_decoder(
                TransactionKindName.UNJAIL_VALIDATOR
            ),
            "tx_change_consensus_key": self._decode_consensus_key_change,
            "tx_init_account": self._object_decoder(TransactionKindName.INIT_ACCOUNT),
            "tx_update_account": self._object_decoder(TransactionKindName.UPDATE_ACCOUNT),
            "tx_reveal_pk": self._address_decoder(TransactionKindName.REVEAL_PK),
        }

    def classify(self, code_hash: Optional[str], data: bytes) -> TransactionKind:
        """
        Classify one inner transaction

        Args:
            code_hash: Hash of the code the transaction executes
            data: Raw transaction payload

        Returns:
            Typed kind, or an unknown kind holding the raw payload
        """
        name = self.registry.resolve(code_hash) if code_hash else None
        if name is None:
            logger.debug(f"Unresolved code hash {code_hash}")
            return TransactionKind.unknown(code_hash, data)

        decoder = self._decoders.get(name)
        if decoder is None:
            logger.debug(f"No decoder for {name} ({code_hash})")
            return TransactionKind.unknown(code_hash, data)

        try:
            return decoder(json.loads(data))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Failed to decode {name} payload ({code_hash}): {e}")
            return TransactionKind.unknown(code_hash, data)

    def classify_block(self, block: Block) -> List[TransactionBatch]:
        """Classify every wrapper batch of a block"""
        return [
            self.classify_batch(raw, result, block.height, index)
            for index, (raw, result) in enumerate(zip(block.txs, block.result.tx_results))
        ]

    def classify_batch(
        self, raw: RawWrapperTx, result: TxResult, height: int, index: int
    ) -> TransactionBatch:
        wrapper_exit = (
            TransactionExitStatus.APPLIED
            if result.code == 0
            else TransactionExitStatus.REJECTED
        )
        wrapper = WrapperTransaction(
            tx_id=raw.hash,
            index=index,
            fee=Fee(
                payer=raw.fee_payer,
                token=raw.fee_token,
                gas_limit=raw.gas_limit,
                gas_used=result.gas_used,
                amount_per_gas_unit=raw.amount_per_gas_unit,
            ),
            atomic=raw.atomic,
            block_height=height,
            exit_code=wrapper_exit,
            total_signatures=raw.signatures,
            size=raw.size,
        )
        inners = [
            self._inner_transaction(wrapper, inner, result, inner_index)
            for inner_index, inner in enumerate(raw.batch)
        ]
        return wrapper, inners

    def _inner_transaction(
        self,
        wrapper: WrapperTransaction,
        raw: RawInnerTx,
        result: TxResult,
        index: int,
    ) -> InnerTransaction:
        # Inner txs missing from the batch result were never executed
        applied = (
            wrapper.exit_code is TransactionExitStatus.APPLIED
            and result.inner_code(raw.hash) == 0
        )
        return InnerTransaction(
            tx_id=raw.hash,
            wrapper_id=wrapper.tx_id,
            index=index,
            kind=self.classify(raw.code_hash, raw.data),
            data=raw.data,
            exit_code=(
                TransactionExitStatus.APPLIED
                if applied
                else TransactionExitStatus.REJECTED
            ),
            extra_sections=raw.extra_sections,
            memo=raw.memo,
            notes=raw.notes,
        )

    # ==================== TRANSFERS ====================

    def _transfer_kind(self, transfer: TransferData) -> TransactionKindName:
        masp = self.masp_address
        sources = [account.owner == masp for account in transfer.sources]
        targets = [account.owner == masp for account in transfer.targets]

        if not any(sources) and not any(targets) and not transfer.shielded_section_hash:
            return TransactionKindName.TRANSPARENT_TRANSFER
        if sources and targets and all(sources) and all(targets):
            return TransactionKindName.SHIELDED_TRANSFER
        if not any(sources) and targets and all(targets):
            return TransactionKindName.SHIELDING_TRANSFER
        if sources and all(sources) and not any(targets):
            return TransactionKindName.UNSHIELDING_TRANSFER
        return TransactionKindName.MIXED_TRANSFER

    def _decode_transfer(self, payload: Dict[str, Any]) -> TransactionKind:
        transfer = _transfer_data(payload)
        return TransactionKind(self._transfer_kind(transfer), transfer)

    # ==================== IBC ====================

    def _decode_ibc(self, payload: Dict[str, Any]) -> TransactionKind:
        message = payload["message"]
        if payload.get("type") == "transfer":
            return self._decode_ibc_transfer(message, payload.get("transfer"))

        type_url = IbcMessageTypes.of(message)
        if type_url == IbcMessageTypes.RECV_PACKET:
            received = self._decode_ibc_recv(message)
            if received is not None:
                return received
        elif type_url in IbcMessageTypes.PACKET_RESOLUTIONS:
            packet_id_fields(message)
        return TransactionKind(
            TransactionKindName.IBC_MSG, IbcMessageData(type_url, message)
        )

    def _decode_ibc_transfer(
        self, message: Dict[str, Any], shielded: Optional[Dict[str, Any]]
    ) -> TransactionKind:
        token = message["token"]
        if shielded:
            transfer = _transfer_data(shielded)
        else:
            transfer = TransferData(
                sources=[AccountAmount(message["sender"], token["denom"], token["amount"])],
                targets=[AccountAmount(message["receiver"], token["denom"], token["amount"])],
            )
        kind = (
            TransactionKindName.IBC_UNSHIELDING_TRANSFER
            if transfer.shielded_section_hash
            else TransactionKindName.IBC_SEND_TRANSPARENT_TRANSFER
        )
        return TransactionKind(kind, IbcTransferData(token["denom"], transfer, message))

    def _decode_ibc_recv(self, message: Dict[str, Any]) -> Optional[TransactionKind]:
        packet_data = decode_packet_data(message.get("packet") or {})
        if packet_data is None or "denom" not in packet_data:
            return None

        denom = packet_data["denom"]
        amount = str(packet_data.get("amount", "0"))
        receiver = packet_data.get("receiver", "")
        transfer = TransferData(
            sources=[AccountAmount(packet_data.get("sender", ""), denom, amount)],
            targets=[AccountAmount(receiver, denom, amount)],
        )
        kind = (
            TransactionKindName.IBC_SHIELDING_TRANSFER
            if receiver == self.masp_address
            else TransactionKindName.IBC_RECV_TRANSPARENT_TRANSFER
        )
        return TransactionKind(kind, IbcTransferData(denom, transfer, message))

    # ==================== PROOF OF STAKE ====================

    def _decode_bond(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.BOND,
            BondData(
                validator=payload["validator"],
                amount=str(payload["amount"]),
                source=payload.get("source"),
            ),
        )

    def _decode_unbond(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.UNBOND,
            UnbondData(
                validator=payload["validator"],
                amount=str(payload["amount"]),
                source=payload.get("source"),
            ),
        )

    def _decode_redelegation(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.REDELEGATION,
            RedelegationData(
                src_validator=payload["src_validator"],
                dest_validator=payload["dest_validator"],
                owner=payload["owner"],
                amount=str(payload["amount"]),
            ),
        )

    def _decode_withdraw(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.WITHDRAW,
            WithdrawData(validator=payload["validator"], source=payload.get("source")),
        )

    def _decode_claim_rewards(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.CLAIM_REWARDS,
            ClaimRewardsData(
                validator=payload["validator"],
                source=payload.get("source"),
                receiver=payload.get("receiver"),
            ),
        )

    def _decode_commission_change(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.CHANGE_COMMISSION,
            CommissionChangeData(
                validator=payload["validator"], new_rate=str(payload["new_rate"])
            ),
        )

    def _decode_consensus_key_change(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.CHANGE_CONSENSUS_KEY,
            ConsensusKeyChangeData(
                validator=payload["validator"], consensus_key=payload["consensus_key"]
            ),
        )

    # ==================== GOVERNANCE ====================

    def _decode_vote_proposal(self, payload: Dict[str, Any]) -> TransactionKind:
        return TransactionKind(
            TransactionKindName.VOTE_PROPOSAL,
            VoteProposalData(
                id=int(payload["id"]), vote=payload["vote"], voter=payload["voter"]
            ),
        )

    # ==================== HELPER METHODS ====================

    @staticmethod
    def _object_decoder(name: TransactionKindName) -> Callable[[Any], TransactionKind]:
        """Kinds stored with their decoded JSON object as payload"""

        def decode(payload: Any) -> TransactionKind:
            if not isinstance(payload, dict):
                raise TypeError(f"{name.value} payload must be an object")
            return TransactionKind(name, payload)

        return decode

    @staticmethod
    def _address_decoder(name: TransactionKindName) -> Callable[[Any], TransactionKind]:
        """Kinds whose payload is a single address or key"""

        def decode(payload: Any) -> TransactionKind:
            if not isinstance(payload, str):
                raise TypeError(f"{name.value} payload must be a string")
            return TransactionKind(name, payload)

        return decode


def _accounts(entries: List[Dict[str, Any]]) -> List[AccountAmount]:
    return [
        AccountAmount(
            owner=entry["owner"], token=entry["token"], amount=str(entry["amount"])
        )
        for entry in entries
    ]


def _transfer_data(payload: Dict[str, Any]) -> TransferData:
    return TransferData(
        sources=_accounts(payload.get("sources") or []),
        targets=_accounts(payload.get("targets") or []),
        shielded_section_hash=payload.get("shielded_section_hash"),
    )
