"""
Pledge live contract status.

Status is never stored. Each call asks the chain oracle whether the contract
output is spent and, if it is, reads the spending transaction to tell which
operation consumed it.
"""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import (
    Bond,
    ContractStatus,
    CovenantContract,
    Escrow,
    classify_spend,
    decode_contract,
)
from .errors import MalformedInput
from .oracle import ChainOracle

log = logging.getLogger(__name__)


def _gate_height(contract: CovenantContract) -> int:
    if isinstance(contract, Bond):
        return contract.lock_until
    return contract.timeout_block


def contract_status(
    oracle: ChainOracle,
    txid: str,
    output_index: int = 0,
    kind: Optional[type] = None,
) -> dict:
    """Resolve the current state of a Bond or Escrow output.

    Args:
        oracle: Chain oracle to query.
        txid: The funding transaction id.
        output_index: Index of the contract output.
        kind: Optionally, ``Bond`` or ``Escrow``; any other kind found at
            the output is rejected.

    Returns:
        A dict with 'txid', 'kind', 'contract', 'value', 'status'
        (:class:`ContractStatus`), 'current_height', 'is_spent', 'spent_by',
        'gate_height', 'blocks_left' and 'is_locked'. For a Bond,
        'is_locked' means release is not yet possible; for an Escrow, that
        timeout is not yet possible.

    Raises:
        MalformedInput: When the output is not a contract of the expected kind.
        PreconditionFailure: When the funding transaction is unknown.
    """
    funding_tx = oracle.get_tx(txid)
    if not 0 <= output_index < len(funding_tx.outputs):
        raise MalformedInput(f"Funding transaction has no output {output_index}", "output_index")
    output = funding_tx.outputs[output_index]
    contract = decode_contract(output.script)
    if kind is not None and not isinstance(contract, kind):
        raise MalformedInput(
            f"{txid}:{output_index} is a {contract.KIND}, not a {kind.KIND}", "locking_script"
        )

    height = oracle.get_height()
    gate = _gate_height(contract)
    spent_by = oracle.get_utxo_spent_status(txid, output_index)

    if spent_by is None:
        status = ContractStatus.OPEN
    else:
        spending_tx = oracle.get_tx(spent_by)
        status = classify_spend(contract, spending_tx, txid, output_index)
        log.debug(f"{txid[:16]}... spent by {spent_by}: {status.value}")

    return {
        "txid": txid,
        "kind": contract.KIND,
        "contract": contract,
        "value": output.value,
        "status": status,
        "current_height": height,
        "is_spent": spent_by is not None,
        "spent_by": spent_by,
        "gate_height": gate,
        "blocks_left": max(0, gate - height),
        "is_locked": height < gate,
    }


def bond_status(oracle: ChainOracle, bond_txid: str, output_index: int = 0) -> dict:
    return contract_status(oracle, bond_txid, output_index, kind=Bond)


def escrow_status(oracle: ChainOracle, escrow_txid: str, output_index: int = 0) -> dict:
    return contract_status(oracle, escrow_txid, output_index, kind=Escrow)
