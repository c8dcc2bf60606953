"""
Pledge actions.

One function per user-facing command: deploy a Bond or Escrow, spend it
through one of its operations, publish an assertion, verify one. Each action
makes a bounded sequence of oracle calls, builds and signs one transaction,
checks it locally and broadcasts it. Nothing is retried.

Usage:
    oracle = WhatsOnChainOracle("main")
    store = FileStore(".")
    result = deploy_bond(oracle, wallet_key, slasher_pub, slash_dest, store=store)
    release_bond(oracle, result["txid"], wallet_key, store=store)
"""

from __future__ import annotations

import logging
from typing import Optional

from . import config, crypto
from .assertion import build_assertion_transaction, verify_assertion_tx
from .builder import build_funding_transaction, build_spend_transaction, sign_spend
from .contracts import Bond, CovenantContract, Escrow, Operation, decode_contract
from .errors import MalformedInput, PreconditionFailure
from .oracle import ChainOracle
from .store import BondRecord, EscrowRecord

log = logging.getLogger(__name__)

OPERATION_FEES = {
    Operation.RELEASE: config.RELEASE_FEE,
    Operation.SLASH: config.SLASH_FEE,
    Operation.APPROVE: config.ESCROW_FEE,
    Operation.REFUND: config.ESCROW_FEE,
    Operation.TIMEOUT: config.ESCROW_FEE,
}


def _explorer_url(txid: str, network: str) -> str:
    return f"{config.NETWORKS[network]['explorer']}{txid}"


def _address_pkh(address: str, network: str, what: str) -> bytes:
    try:
        return crypto.pkh_from_address(address, network)
    except ValueError as err:
        raise MalformedInput(f"Invalid {what} address {address!r}: {err}", what) from err


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------

def _deploy(
    oracle: ChainOracle,
    contract: CovenantContract,
    amount: int,
    private_key: bytes,
    fee: int,
    network: str,
) -> tuple[str, int]:
    address = crypto.public_key_to_address(
        crypto.public_key_from_private_key(private_key), network
    )
    utxos = oracle.get_unspent(address)
    log.info(f"Funding {contract.KIND} from {address} ({len(utxos)} UTXOs)")
    tx = build_funding_transaction(contract, amount, utxos, private_key, fee)
    log.info(f"TX size: {len(tx.serialize())} bytes, broadcasting...")
    return oracle.broadcast(tx.serialize()), oracle.get_height()


def deploy_bond(
    oracle: ChainOracle,
    private_key: bytes,
    slasher_pub: bytes,
    slash_dest: str,
    amount: int = config.DEFAULT_CONTRACT_AMOUNT,
    lock_blocks: int = config.DEFAULT_LOCK_BLOCKS,
    store=None,
    network: str = config.DEFAULT_NETWORK,
    fee: int = config.DEPLOY_FEE,
) -> dict:
    """Lock ``amount`` in a Bond held by the wallet key.

    The bond is releasable ``lock_blocks`` blocks after the current height
    and slashable by ``slasher_pub`` at any time, paying ``slash_dest``.

    Args:
        oracle: Chain oracle.
        private_key: Bondholder wallet key; also funds the deployment.
        slasher_pub: Compressed public key of the slashing authority.
        slash_dest: Address that receives slashed funds.
        amount: Bond value in satoshis.
        lock_blocks: Blocks from the current height until release.
        store: Optional record store; the new BondRecord is saved to it.
        network: Network name for addresses.
        fee: Deployment fee in satoshis.

    Returns:
        A dict with 'txid', 'contract', 'record' and 'explorer'.
    """
    bondholder_pub = crypto.public_key_from_private_key(private_key)
    height = oracle.get_height()
    try:
        contract = Bond(
            bondholder_pkh=crypto.hash160(bondholder_pub),
            bondholder_pub=bondholder_pub,
            lock_until=height + lock_blocks,
            slasher_pub=bytes(slasher_pub),
            slash_dest_pkh=_address_pkh(slash_dest, network, "slash_dest"),
        )
    except ValueError as err:
        raise MalformedInput(f"Invalid bond parameters: {err}", "bond") from err

    log.info(
        f"Deploying Bond: {amount} sats, lock until block {contract.lock_until} "
        f"(current: {height}, +{lock_blocks} blocks)"
    )
    txid, block_height = _deploy(oracle, contract, amount, private_key, fee, network)
    record = BondRecord.for_contract(contract, txid, amount, block_height, network)
    if store is not None:
        store.put(record)
    log.info(f"Bond deployed: {txid}")
    return {
        "txid": txid,
        "contract": contract,
        "record": record,
        "explorer": _explorer_url(txid, network),
    }


def deploy_escrow(
    oracle: ChainOracle,
    private_key: bytes,
    worker_pub: bytes,
    worker_address: str,
    amount: int = config.DEFAULT_CONTRACT_AMOUNT,
    timeout_blocks: int = config.DEFAULT_TIMEOUT_BLOCKS,
    store=None,
    network: str = config.DEFAULT_NETWORK,
    fee: int = config.DEPLOY_FEE,
) -> dict:
    """Lock ``amount`` in an Escrow paid for by the wallet key (the requester).

    Returns:
        A dict with 'txid', 'contract', 'record' and 'explorer'.
    """
    requester_pub = crypto.public_key_from_private_key(private_key)
    height = oracle.get_height()
    try:
        contract = Escrow(
            requester_pub=requester_pub,
            requester_pkh=crypto.hash160(requester_pub),
            worker_pub=bytes(worker_pub),
            worker_pkh=_address_pkh(worker_address, network, "worker"),
            timeout_block=height + timeout_blocks,
        )
    except ValueError as err:
        raise MalformedInput(f"Invalid escrow parameters: {err}", "escrow") from err

    log.info(
        f"Deploying Escrow: {amount} sats, timeout block {contract.timeout_block} "
        f"(current: {height}, +{timeout_blocks} blocks)"
    )
    txid, block_height = _deploy(oracle, contract, amount, private_key, fee, network)
    record = EscrowRecord.for_contract(contract, txid, amount, block_height, network)
    if store is not None:
        store.put(record)
    log.info(f"Escrow deployed: {txid}")
    return {
        "txid": txid,
        "contract": contract,
        "record": record,
        "explorer": _explorer_url(txid, network),
    }


# ---------------------------------------------------------------------------
# Spending
# ---------------------------------------------------------------------------

def _reconcile(
    record, txid: str, contract: CovenantContract, output_index: int, value: int
) -> None:
    if not record.matches(contract):
        problem = "contract fields differ"
    elif record.output_index != output_index:
        problem = f"record is for output {record.output_index}, spending output {output_index}"
    elif record.amount != value:
        problem = f"record amount {record.amount}, on-chain value {value}"
    else:
        return
    raise PreconditionFailure(
        f"State record for {txid[:16]}... does not match the on-chain contract: {problem}",
        "record_mismatch",
    )


def spend_contract(
    oracle: ChainOracle,
    txid: str,
    operation: Operation,
    private_key: bytes,
    output_index: int = 0,
    store=None,
    fee: Optional[int] = None,
    network: str = config.DEFAULT_NETWORK,
) -> dict:
    """Spend a contract output through ``operation``.

    The contract is rebuilt from the funding transaction. When a store is
    given and holds a record for ``txid``, the record must describe the same
    contract. The payout is the output value minus ``fee``.

    Returns:
        A dict with 'txid', 'operation', 'amount', 'fee', 'recipient'
        (address) and 'explorer'.

    Raises:
        PreconditionFailure: Already spent, lock not reached, wrong role,
            or record mismatch.
        PredicateViolation: The operation does not apply to this contract,
            or the fee leaves nothing to pay out.
    """
    if fee is None:
        fee = OPERATION_FEES[operation]

    spent_by = oracle.get_utxo_spent_status(txid, output_index)
    if spent_by is not None:
        raise PreconditionFailure(f"{txid[:16]}... already spent by {spent_by}", "spent")

    funding_tx = oracle.get_tx(txid)
    if not 0 <= output_index < len(funding_tx.outputs):
        raise PreconditionFailure(
            f"Funding transaction has no output {output_index}", "output_index"
        )
    value = funding_tx.outputs[output_index].value
    contract = decode_contract(funding_tx.outputs[output_index].script)
    contract.rule(operation)

    if store is not None:
        record = store.get(txid)
        if record is not None:
            _reconcile(record, txid, contract, output_index, value)

    height = oracle.get_height()
    threshold = contract.threshold(operation)
    if threshold is not None:
        log.info(f"{operation.value}: lock at block {threshold} (current: {height})")

    unsigned = build_spend_transaction(
        contract, funding_tx, output_index, operation, value - fee, chain_height=height
    )
    tx = sign_spend(unsigned, private_key)
    recipient = crypto.address_from_pkh(unsigned.recipient_pkh, network)
    log.info(f"{operation.value}: {unsigned.amount} sats -> {recipient}")

    spend_txid = oracle.broadcast(tx.serialize())
    log.info(f"{operation.value} broadcast: {spend_txid}")
    return {
        "txid": spend_txid,
        "operation": operation,
        "amount": unsigned.amount,
        "fee": fee,
        "recipient": recipient,
        "explorer": _explorer_url(spend_txid, network),
    }


def release_bond(
    oracle: ChainOracle, bond_txid: str, private_key: bytes, **kwargs
) -> dict:
    """Bondholder reclaims the bond once the lock height is reached."""
    return spend_contract(oracle, bond_txid, Operation.RELEASE, private_key, **kwargs)


def slash_bond(
    oracle: ChainOracle, bond_txid: str, private_key: bytes, **kwargs
) -> dict:
    """Slasher sends the bond to its slash destination."""
    return spend_contract(oracle, bond_txid, Operation.SLASH, private_key, **kwargs)


def approve_escrow(
    oracle: ChainOracle, escrow_txid: str, private_key: bytes, **kwargs
) -> dict:
    return spend_contract(oracle, escrow_txid, Operation.APPROVE, private_key, **kwargs)


def refund_escrow(
    oracle: ChainOracle, escrow_txid: str, private_key: bytes, **kwargs
) -> dict:
    return spend_contract(oracle, escrow_txid, Operation.REFUND, private_key, **kwargs)


def timeout_escrow(
    oracle: ChainOracle, escrow_txid: str, private_key: bytes, **kwargs
) -> dict:
    return spend_contract(oracle, escrow_txid, Operation.TIMEOUT, private_key, **kwargs)


# ---------------------------------------------------------------------------
# Assertions
# ---------------------------------------------------------------------------

def publish_assertion(
    oracle: ChainOracle,
    bond_txid: str,
    topic: str,
    claim: str,
    private_key: bytes,
    network: str = config.DEFAULT_NETWORK,
    fee: int = config.ASSERT_FEE,
) -> dict:
    """Sign and publish an ASSERT1 record backed by ``bond_txid``.

    Publishing against a spent bond is allowed but logged as a warning; the
    assertion will carry no weight.

    Returns:
        A dict with 'txid', 'tx', 'bond_live' and 'explorer'.
    """
    spent_by = oracle.get_utxo_spent_status(bond_txid, 0)
    if spent_by is not None:
        log.warning(f"Bond has been spent ({spent_by[:16]}...), assertion will be unbacked")
    else:
        log.info("Bond is active (unspent)")

    address = crypto.public_key_to_address(
        crypto.public_key_from_private_key(private_key), network
    )
    utxos = oracle.get_unspent(address)
    tx = build_assertion_transaction(bond_txid, topic, claim, private_key, utxos, fee)
    txid = oracle.broadcast(tx.serialize())
    log.info(f"Assertion published: {txid}")
    return {
        "txid": txid,
        "tx": tx,
        "bond_live": spent_by is None,
        "explorer": _explorer_url(txid, network),
    }


def check_assertion(
    oracle: ChainOracle, txid: str, network: str = config.DEFAULT_NETWORK
) -> dict:
    """Fetch an assertion transaction and verify it against the live chain."""
    report = verify_assertion_tx(oracle.get_tx(txid), oracle, network)
    for check in report["checks"]:
        if check["passed"]:
            log.info(f"{check['name']}: {check['message']}")
        else:
            log.warning(f"{check['name']}: {check['message']}")
    return report
