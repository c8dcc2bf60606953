"""
Pledge chain oracle.

The core reads ledger state and broadcasts through the :class:`ChainOracle`
interface only. Two implementations are provided: :class:`MemoryOracle`, an
in-process ledger for tests and dry runs, and :class:`WhatsOnChainOracle`, a
REST client for the WhatsOnChain API.

Usage:
    oracle = WhatsOnChainOracle("main")
    height = oracle.get_height()
    spent_by = oracle.get_utxo_spent_status(bond_txid, 0)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from . import config, crypto, script
from .errors import BroadcastRejected, MalformedInput, PreconditionFailure, TransportFailure
from .tx import Transaction, TxInput, TxOutput, Utxo

log = logging.getLogger(__name__)


class ChainOracle(ABC):
    """Read access to the ledger plus broadcast."""

    @abstractmethod
    def get_height(self) -> int:
        """Current chain height."""

    @abstractmethod
    def get_raw_tx(self, txid: str) -> bytes:
        """Raw bytes of a transaction.

        Raises:
            PreconditionFailure: When the transaction is unknown.
        """

    @abstractmethod
    def get_utxo_spent_status(self, txid: str, index: int) -> Optional[str]:
        """Txid of the transaction spending ``txid:index``, or None if unspent."""

    @abstractmethod
    def get_unspent(self, address: str) -> list[Utxo]:
        """Unspent P2PKH outputs paying ``address``."""

    @abstractmethod
    def broadcast(self, raw: bytes) -> str:
        """Submit a transaction; returns its txid.

        Raises:
            BroadcastRejected: When the network refuses the transaction.
        """

    def get_tx(self, txid: str) -> Transaction:
        return Transaction.parse(self.get_raw_tx(txid))


# ---------------------------------------------------------------------------
# In-memory ledger
# ---------------------------------------------------------------------------

class MemoryOracle(ChainOracle):
    """A minimal ledger held in memory.

    Enforces the single-spend rule, input existence, value conservation and
    transaction finality against the current height. Scripts are not
    executed.
    """

    def __init__(self, height: int = 0, network: str = config.DEFAULT_NETWORK):
        self.height = height
        self.network = network
        self._txs: dict[str, bytes] = {}
        self._outputs: dict[tuple[str, int], TxOutput] = {}
        self._spent: dict[tuple[str, int], str] = {}
        self._coinbase_count = 0

    def mine(self, blocks: int = 1) -> int:
        self.height += blocks
        return self.height

    def fund_address(self, address: str, value: int) -> Utxo:
        """Create a coin paying ``address`` out of thin air."""
        pkh = crypto.pkh_from_address(address, self.network)
        self._coinbase_count += 1
        tx = Transaction(
            inputs=[TxInput(
                prev_txid="00" * 32,
                prev_index=0xFFFFFFFF,
                script_sig=script.build_script([script.encode_num(self._coinbase_count)]),
            )],
            outputs=[TxOutput(value, script.p2pkh_locking_script(pkh))],
        )
        self._record(tx)
        return Utxo(tx.txid(), 0, value)

    def _record(self, tx: Transaction) -> str:
        txid = tx.txid()
        self._txs[txid] = tx.serialize()
        for txin in tx.inputs:
            self._spent[(txin.prev_txid, txin.prev_index)] = txid
        for i, txout in enumerate(tx.outputs):
            self._outputs[(txid, i)] = txout
        return txid

    def get_height(self) -> int:
        return self.height

    def get_raw_tx(self, txid: str) -> bytes:
        try:
            return self._txs[txid]
        except KeyError:
            raise PreconditionFailure(f"Transaction not found: {txid}", "not_found") from None

    def get_utxo_spent_status(self, txid: str, index: int) -> Optional[str]:
        return self._spent.get((txid, index))

    def get_unspent(self, address: str) -> list[Utxo]:
        locking = script.p2pkh_locking_script(crypto.pkh_from_address(address, self.network))
        return [
            Utxo(txid, index, txout.value)
            for (txid, index), txout in self._outputs.items()
            if txout.script == locking and (txid, index) not in self._spent
        ]

    def broadcast(self, raw: bytes) -> str:
        tx = Transaction.parse(raw)
        txid = tx.txid()
        if txid in self._txs:
            raise BroadcastRejected(f"Transaction already known: {txid}", "broadcast")

        total_in = 0
        for txin in tx.inputs:
            outpoint = (txin.prev_txid, txin.prev_index)
            if outpoint not in self._outputs:
                raise BroadcastRejected(
                    f"Missing input {txin.prev_txid}:{txin.prev_index}", "broadcast"
                )
            if outpoint in self._spent:
                raise BroadcastRejected(
                    f"txn-mempool-conflict: {txin.prev_txid}:{txin.prev_index} "
                    f"already spent by {self._spent[outpoint]}",
                    "broadcast",
                )
            total_in += self._outputs[outpoint].value

        total_out = sum(txout.value for txout in tx.outputs)
        if total_out > total_in:
            raise BroadcastRejected(
                f"bad-txns-in-belowout: {total_in} in, {total_out} out", "broadcast"
            )
        if not tx.is_final(self.height):
            raise BroadcastRejected(
                f"non-final: locktime {tx.locktime} at height {self.height}", "broadcast"
            )
        return self._record(tx)


# ---------------------------------------------------------------------------
# WhatsOnChain REST client
# ---------------------------------------------------------------------------

class WhatsOnChainOracle(ChainOracle):
    """Chain oracle backed by the WhatsOnChain REST API.

    Usage:
        oracle = WhatsOnChainOracle("main", timeout=10)
        utxos = oracle.get_unspent("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2")
    """

    def __init__(
        self,
        network: str = config.DEFAULT_NETWORK,
        base_url: Optional[str] = None,
        timeout: int = config.HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if network not in config.NETWORKS:
            raise ValueError(f"Unknown network: {network}")
        self.network = network
        self.base_url = (base_url or config.NETWORKS[network]["api"]).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, path: str, expect_json: bool = True, allow_missing: bool = False) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(
                url, headers={"Accept": "application/json"}, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransportFailure(f"Connection failed: {e}", "transport") from e

        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code != 200:
            raise TransportFailure(
                f"GET {path} failed ({response.status_code}): {response.text[:200]}",
                "transport",
            )
        if not expect_json:
            return response.text.strip()
        try:
            return response.json()
        except ValueError as e:
            raise MalformedInput(f"Bad JSON: {response.text[:200]}", "oracle_payload") from e

    def get_height(self) -> int:
        info = self._get("/chain/info")
        blocks = info.get("blocks") if isinstance(info, dict) else None
        if isinstance(blocks, bool) or not isinstance(blocks, int):
            raise MalformedInput(f"Unexpected chain info: {str(info)[:200]}", "oracle_payload")
        return blocks

    def get_raw_tx(self, txid: str) -> bytes:
        text = self._get(f"/tx/{txid}/hex", expect_json=False, allow_missing=True)
        if text is None:
            raise PreconditionFailure(f"Transaction not found: {txid}", "not_found")
        try:
            return crypto.from_hex(text.replace('"', ""))
        except ValueError as e:
            raise MalformedInput(f"Bad transaction hex for {txid}: {e}", "oracle_payload") from e

    def get_utxo_spent_status(self, txid: str, index: int) -> Optional[str]:
        # 404 means the output exists and is unspent
        info = self._get(f"/tx/{txid}/{index}/spent", allow_missing=True)
        if info is None:
            return None
        if not isinstance(info, dict) or not isinstance(info.get("txid"), str):
            raise MalformedInput(f"Unexpected spent info: {str(info)[:200]}", "oracle_payload")
        return info["txid"]

    def get_unspent(self, address: str) -> list[Utxo]:
        entries = self._get(f"/address/{address}/unspent")
        if not isinstance(entries, list):
            raise MalformedInput(
                f"Unexpected unspent list: {str(entries)[:200]}", "oracle_payload"
            )
        try:
            return [Utxo(e["tx_hash"], int(e["tx_pos"]), int(e["value"])) for e in entries]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInput(f"Unexpected unspent entry: {e}", "oracle_payload") from e

    def broadcast(self, raw: bytes) -> str:
        url = f"{self.base_url}/tx/raw"
        try:
            response = self.session.post(
                url, json={"txhex": crypto.to_hex(raw)}, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransportFailure(f"Connection failed: {e}", "transport") from e
        if response.status_code != 200:
            raise BroadcastRejected(
                f"Broadcast failed ({response.status_code}): {response.text}", "broadcast"
            )
        txid = response.text.replace('"', "").strip()
        log.info(f"Broadcast accepted: {txid}")
        return txid
