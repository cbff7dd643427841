"""
Indexer Data Models
Records derived from each block and written by the storage layer
"""

from __future__ import annotations

import base64
import json
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


# ==================== ENUMS ====================


class TransactionExitStatus(Enum):
    """Execution outcome of a wrapper or inner transaction"""

    APPLIED = "applied"
    REJECTED = "rejected"


class TransactionKindName(Enum):
    """Discriminant of every transaction kind the indexer stores"""

    # Transfers
    TRANSPARENT_TRANSFER = "transparent_transfer"
    SHIELDED_TRANSFER = "shielded_transfer"
    SHIELDING_TRANSFER = "shielding_transfer"
    UNSHIELDING_TRANSFER = "unshielding_transfer"
    MIXED_TRANSFER = "mixed_transfer"
    IBC_SEND_TRANSPARENT_TRANSFER = "ibc_send_transparent_transfer"
    IBC_RECV_TRANSPARENT_TRANSFER = "ibc_recv_transparent_transfer"
    IBC_SHIELDING_TRANSFER = "ibc_shielding_transfer"
    IBC_UNSHIELDING_TRANSFER = "ibc_unshielding_transfer"
    # Proof of stake
    BOND = "bond"
    REDELEGATION = "redelegation"
    UNBOND = "unbond"
    WITHDRAW = "withdraw"
    CLAIM_REWARDS = "claim_rewards"
    BECOME_VALIDATOR = "become_validator"
    DEACTIVATE_VALIDATOR = "deactivate_validator"
    REACTIVATE_VALIDATOR = "reactivate_validator"
    UNJAIL_VALIDATOR = "unjail_validator"
    CHANGE_COMMISSION = "change_commission"
    CHANGE_METADATA = "change_metadata"
    CHANGE_CONSENSUS_KEY = "change_consensus_key"
    INIT_ACCOUNT = "init_account"
    UPDATE_ACCOUNT = "update_account"
    # Governance
    VOTE_PROPOSAL = "vote_proposal"
    INIT_PROPOSAL = "init_proposal"
    # Accounts
    REVEAL_PK = "reveal_pk"
    # Any other IBC message
    IBC_MSG = "ibc_msg"
    UNKNOWN = "unknown"


SENT_IBC_KINDS = frozenset(
    {
        TransactionKindName.IBC_SEND_TRANSPARENT_TRANSFER,
        TransactionKindName.IBC_UNSHIELDING_TRANSFER,
    }
)


class IbcAckStatus(Enum):
    """Resolution of a packet this chain sent"""

    SUCCESS = "success"
    FAIL = "fail"
    UNKNOWN = "unknown"
    TIMEOUT = "timeout"


class IbcTokenAction(Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


# ==================== TRANSACTION PAYLOADS ====================


@dataclass(frozen=True)
class AccountAmount:
    """One side of a transfer"""

    owner: str
    token: str
    amount: str


@dataclass(frozen=True)
class TransferData:
    sources: List[AccountAmount]
    targets: List[AccountAmount]
    shielded_section_hash: Optional[str] = None


@dataclass(frozen=True)
class BondData:
    validator: str
    amount: str
    source: Optional[str] = None


@dataclass(frozen=True)
class UnbondData:
    validator: str
    amount: str
    source: Optional[str] = None


@dataclass(frozen=True)
class RedelegationData:
    src_validator: str
    dest_validator: str
    owner: str
    amount: str


@dataclass(frozen=True)
class WithdrawData:
    validator: str
    source: Optional[str] = None


@dataclass(frozen=True)
class ClaimRewardsData:
    validator: str
    source: Optional[str] = None
    receiver: Optional[str] = None


@dataclass(frozen=True)
class VoteProposalData:
    id: int
    vote: str
    voter: str


@dataclass(frozen=True)
class CommissionChangeData:
    validator: str
    new_rate: str


@dataclass(frozen=True)
class ConsensusKeyChangeData:
    validator: str
    consensus_key: str


@dataclass(frozen=True)
class IbcTransferData:
    """Token transfer carried by an IBC message"""

    token: str
    transfer: TransferData
    message: Dict[str, Any]


@dataclass(frozen=True)
class IbcMessageData:
    """Raw IBC message envelope"""

    type_url: str
    message: Dict[str, Any]


@dataclass(frozen=True)
class UnknownData:
    """Payload kept verbatim so the transaction can be reclassified later"""

    code_hash: Optional[str]
    raw: bytes


Payload = Union[
    TransferData,
    BondData,
    UnbondData,
    RedelegationData,
    WithdrawData,
    ClaimRewardsData,
    VoteProposalData,
    CommissionChangeData,
    ConsensusKeyChangeData,
    IbcTransferData,
    IbcMessageData,
    UnknownData,
    Dict[str, Any],
    str,
]


def _jsonable(value: Any) -> Any:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if is_dataclass(value):
        return {key: _jsonable(item) for key, item in asdict(value).items()}
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass(frozen=True)
class TransactionKind:
    """Tagged transaction kind: discriminant plus typed payload"""

    name: TransactionKindName
    payload: Optional[Payload] = None

    @classmethod
    def unknown(cls, code_hash: Optional[str], raw: bytes) -> "TransactionKind":
        return cls(TransactionKindName.UNKNOWN, UnknownData(code_hash, raw))

    @property
    def is_unknown(self) -> bool:
        return self.name is TransactionKindName.UNKNOWN

    def to_json(self) -> Optional[str]:
        """Serialize the payload for the ``data`` column"""
        if self.payload is None:
            return None
        return json.dumps(_jsonable(self.payload), sort_keys=True)


# ==================== TRANSACTIONS ====================


@dataclass(frozen=True)
class Fee:
    payer: Optional[str]
    token: Optional[str]
    gas_limit: int
    gas_used: Optional[int]
    amount_per_gas_unit: Optional[str]


@dataclass(frozen=True)
class WrapperTransaction:
    """Fee-paying envelope of a batch of inner transactions"""

    tx_id: str
    index: int
    fee: Fee
    atomic: bool
    block_height: int
    exit_code: TransactionExitStatus
    total_signatures: int
    size: int

    def to_row(self) -> tuple:
        return (
            self.tx_id,
            self.fee.payer,
            self.fee.token,
            self.fee.gas_limit,
            self.fee.gas_used,
            self.fee.amount_per_gas_unit,
            self.atomic,
            self.block_height,
            self.exit_code.value,
            self.index,
            self.total_signatures,
            self.size,
        )


@dataclass(frozen=True)
class InnerTransaction:
    """One operation of a wrapper batch"""

    tx_id: str
    wrapper_id: str
    index: int
    kind: TransactionKind
    data: bytes
    exit_code: TransactionExitStatus
    extra_sections: Dict[str, str] = field(default_factory=dict)
    memo: Optional[str] = None
    notes: int = 0

    def was_successful(self, wrapper: WrapperTransaction) -> bool:
        return (
            self.exit_code is TransactionExitStatus.APPLIED
            and wrapper.exit_code is TransactionExitStatus.APPLIED
        )

    def is_sent_ibc(self) -> bool:
        return self.kind.name in SENT_IBC_KINDS

    def to_row(self) -> tuple:
        return (
            self.tx_id,
            self.wrapper_id,
            self.index,
            self.kind.name.value,
            self.kind.to_json(),
            json.dumps(self.extra_sections, sort_keys=True),
            self.memo,
            self.notes,
            self.exit_code.value,
        )


# A wrapper with its classified batch
TransactionBatch = Tuple[WrapperTransaction, List[InnerTransaction]]


# ==================== IBC ====================


def packet_id(
    source_port: str,
    source_channel: str,
    dest_port: str,
    dest_channel: str,
    sequence: str,
) -> str:
    """Unique packet identifier, also the input of synthetic tx ids"""
    return f"{source_port}/{source_channel}/{dest_port}/{dest_channel}/{sequence}"


@dataclass(frozen=True)
class IbcSequence:
    """A packet this chain sent"""

    sequence_number: str
    source_port: str
    dest_port: str
    source_channel: str
    dest_channel: str
    timeout: int
    tx_id: str

    def packet_id(self) -> str:
        return packet_id(
            self.source_port,
            self.source_channel,
            self.dest_port,
            self.dest_channel,
            self.sequence_number,
        )


@dataclass(frozen=True)
class IbcAck:
    """Outcome of a packet this chain sent"""

    sequence_number: str
    source_port: str
    dest_port: str
    source_channel: str
    dest_channel: str
    status: IbcAckStatus

    def packet_id(self) -> str:
        return packet_id(
            self.source_port,
            self.source_channel,
            self.dest_port,
            self.dest_channel,
            self.sequence_number,
        )


@dataclass(frozen=True)
class IbcTokenFlow:
    action: IbcTokenAction
    denom: str
    amount: Decimal


# ==================== GAS ====================


@dataclass
class GasEstimation:
    """Weighted operation counts of one fully successful wrapper batch"""

    wrapper_id: str
    signatures: int = 0
    size: int = 0
    transparent_transfer: int = 0
    shielded_transfer: int = 0
    shielding_transfer: int = 0
    unshielding_transfer: int = 0
    mixed_transfer: int = 0
    ibc_transparent_transfer: int = 0
    ibc_shielding_transfer: int = 0
    ibc_unshielding_transfer: int = 0
    bond: int = 0
    redelegation: int = 0
    unbond: int = 0
    withdraw: int = 0
    claim_rewards: int = 0
    vote: int = 0
    reveal_pk: int = 0

    COUNTERS = (
        "transparent_transfer",
        "shielded_transfer",
        "shielding_transfer",
        "unshielding_transfer",
        "mixed_transfer",
        "ibc_transparent_transfer",
        "ibc_shielding_transfer",
        "ibc_unshielding_transfer",
        "bond",
        "redelegation",
        "unbond",
        "withdraw",
        "claim_rewards",
        "vote",
        "reveal_pk",
    )

    def increase(self, counter: str, weight: int = 1) -> None:
        setattr(self, counter, getattr(self, counter) + weight)

    def to_row(self) -> tuple:
        return (
            self.wrapper_id,
            self.signatures,
            self.size,
            *(getattr(self, counter) for counter in self.COUNTERS),
        )


# ==================== CRAWLER ====================


@dataclass(frozen=True)
class CrawlerState:
    """Resumption cursor of a named crawler"""

    name: str
    last_processed_block: int
    timestamp: datetime


@dataclass
class BlockData:
    """Everything derived from one block, written as a single unit"""

    height: int
    wrappers: List[WrapperTransaction]
    inners: List[InnerTransaction]
    ibc_sequences: List[IbcSequence]
    ibc_acks: List[IbcAck]
    token_flows: List[IbcTokenFlow]
    gas_estimates: List[GasEstimation]
    crawler_state: CrawlerState
