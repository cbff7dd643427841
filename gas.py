"""
Gas Estimation
Per-wrapper operation profiles, used to estimate the gas a batch needs
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from models import GasEstimation, InnerTransaction, TransactionBatch, TransactionKindName

logger = logging.getLogger(__name__)

# Weight modes
UNIT = "unit"
NOTES = "notes"

# Every kind must appear here: (counter, weight mode), or None when the kind
# does not contribute to the estimate
GAS_RULES: Dict[TransactionKindName, Optional[Tuple[str, str]]] = {
    TransactionKindName.TRANSPARENT_TRANSFER: ("transparent_transfer", UNIT),
    TransactionKindName.SHIELDED_TRANSFER: ("shielded_transfer", NOTES),
    TransactionKindName.SHIELDING_TRANSFER: ("shielding_transfer", NOTES),
    TransactionKindName.UNSHIELDING_TRANSFER: ("unshielding_transfer", NOTES),
    TransactionKindName.MIXED_TRANSFER: ("mixed_transfer", NOTES),
    TransactionKindName.IBC_SEND_TRANSPARENT_TRANSFER: ("ibc_transparent_transfer", UNIT),
    TransactionKindName.IBC_RECV_TRANSPARENT_TRANSFER: ("ibc_transparent_transfer", UNIT),
    TransactionKindName.IBC_SHIELDING_TRANSFER: ("ibc_shielding_transfer", NOTES),
    TransactionKindName.IBC_UNSHIELDING_TRANSFER: ("ibc_unshielding_transfer", NOTES),
    TransactionKindName.BOND: ("bond", UNIT),
    TransactionKindName.REDELEGATION: ("redelegation", UNIT),
    TransactionKindName.UNBOND: ("unbond", UNIT),
    TransactionKindName.WITHDRAW: ("withdraw", UNIT),
    TransactionKindName.CLAIM_REWARDS: ("claim_rewards", UNIT),
    TransactionKindName.VOTE_PROPOSAL: ("vote", UNIT),
    TransactionKindName.REVEAL_PK: ("reveal_pk", UNIT),
    TransactionKindName.BECOME_VALIDATOR: None,
    TransactionKindName.DEACTIVATE_VALIDATOR: None,
    TransactionKindName.REACTIVATE_VALIDATOR: None,
    TransactionKindName.UNJAIL_VALIDATOR: None,
    TransactionKindName.CHANGE_COMMISSION: None,
    TransactionKindName.CHANGE_METADATA: None,
    TransactionKindName.CHANGE_CONSENSUS_KEY: None,
    TransactionKindName.INIT_ACCOUNT: None,
    TransactionKindName.UPDATE_ACCOUNT: None,
    TransactionKindName.INIT_PROPOSAL: None,
    TransactionKindName.IBC_MSG: None,
    TransactionKindName.UNKNOWN: None,
}

_unhandled = set(TransactionKindName) - set(GAS_RULES)
if _unhandled:
    raise RuntimeError(f"No gas rule for {sorted(kind.value for kind in _unhandled)}")


def apply_rule(estimate: GasEstimation, tx: InnerTransaction) -> None:
    rule = GAS_RULES[tx.kind.name]
    if rule is None:
        return
    counter, mode = rule
    estimate.increase(counter, tx.notes if mode == NOTES else 1)


def get_gas_estimates(txs: Sequence[TransactionBatch]) -> List[GasEstimation]:
    """
    Estimate every batch whose inner transactions all succeeded

    A batch with a failed inner tx is left out: its gas cannot be split per
    operation without re-executing it.
    """
    estimates = []
    for wrapper, inner_txs in txs:
        if not all(tx.was_successful(wrapper) for tx in inner_txs):
            logger.debug(f"Skipping gas estimate of partially failed batch {wrapper.tx_id}")
            continue

        estimate = GasEstimation(
            wrapper_id=wrapper.tx_id,
            signatures=wrapper.total_signatures,
            size=wrapper.size,
        )
        for tx in inner_txs:
            apply_rule(estimate, tx)
        estimates.append(estimate)

    return estimates
