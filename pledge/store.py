"""
Pledge contract state records and stores.

A record is written once per deployed Bond or Escrow and holds what the
spending tools need besides the funding transaction itself. Records must
agree with the on-chain locking script; :meth:`BondRecord.matches` and
:meth:`EscrowRecord.matches` check that before any spend is built.

Two stores are provided: :class:`MemoryStore` for tests and dry runs, and
:class:`FileStore`, which keeps one JSON file per contract under
``bonds/`` and ``escrows/``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

from . import config, crypto
from .contracts import Bond, CovenantContract, Escrow
from .errors import MalformedInput

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _require(data: dict, key: str, kind: type):
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, kind):
        raise MalformedInput(f"Missing or invalid record field: {key}", key)
    return value


@dataclass(frozen=True)
class BondRecord:
    """Persisted state of a deployed Bond."""
    bond_txid: str
    output_index: int
    amount: int
    lock_until: int
    bondholder_address: str
    bondholder_pub: str
    slasher_address: str
    slasher_pub: str
    slash_dest: str
    deployed_at: str
    block_height: int

    kind = "bond"

    @property
    def txid(self) -> str:
        return self.bond_txid

    @classmethod
    def for_contract(
        cls,
        contract: Bond,
        txid: str,
        amount: int,
        block_height: int,
        network: str = config.DEFAULT_NETWORK,
        output_index: int = 0,
    ) -> "BondRecord":
        return cls(
            bond_txid=txid,
            output_index=output_index,
            amount=amount,
            lock_until=contract.lock_until,
            bondholder_address=crypto.address_from_pkh(contract.bondholder_pkh, network),
            bondholder_pub=crypto.to_hex(contract.bondholder_pub),
            slasher_address=crypto.public_key_to_address(contract.slasher_pub, network),
            slasher_pub=crypto.to_hex(contract.slasher_pub),
            slash_dest=crypto.address_from_pkh(contract.slash_dest_pkh, network),
            deployed_at=crypto.timestamp(),
            block_height=block_height,
        )

    def to_contract(self) -> Bond:
        """Rebuild the Bond these fields describe.

        Raises:
            MalformedInput: When an address or key in the record is invalid.
        """
        try:
            return Bond(
                bondholder_pkh=crypto.pkh_from_address(self.bondholder_address),
                bondholder_pub=crypto.from_hex(self.bondholder_pub),
                lock_until=self.lock_until,
                slasher_pub=crypto.from_hex(self.slasher_pub),
                slash_dest_pkh=crypto.pkh_from_address(self.slash_dest),
            )
        except ValueError as err:
            raise MalformedInput(f"Invalid bond record {self.bond_txid}: {err}", "record") from err

    def matches(self, contract: CovenantContract) -> bool:
        return isinstance(contract, Bond) and self.to_contract() == contract

    def to_dict(self) -> dict:
        return {
            "bondTxid": self.bond_txid,
            "outputIndex": self.output_index,
            "amount": self.amount,
            "lockUntil": self.lock_until,
            "bondholderAddress": self.bondholder_address,
            "bondholderPub": self.bondholder_pub,
            "slasherAddress": self.slasher_address,
            "slasherPub": self.slasher_pub,
            "slashDest": self.slash_dest,
            "deployedAt": self.deployed_at,
            "blockHeight": self.block_height,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BondRecord":
        return cls(
            bond_txid=_require(data, "bondTxid", str),
            output_index=data.get("outputIndex", 0),
            amount=_require(data, "amount", int),
            lock_until=_require(data, "lockUntil", int),
            bondholder_address=_require(data, "bondholderAddress", str),
            bondholder_pub=_require(data, "bondholderPub", str),
            slasher_address=_require(data, "slasherAddress", str),
            slasher_pub=_require(data, "slasherPub", str),
            slash_dest=_require(data, "slashDest", str),
            deployed_at=data.get("deployedAt", ""),
            block_height=data.get("blockHeight", 0),
        )


@dataclass(frozen=True)
class EscrowRecord:
    """Persisted state of a deployed Escrow."""
    escrow_txid: str
    output_index: int
    amount: int
    timeout_block: int
    requester_address: str
    requester_pub: str
    worker_address: str
    worker_pub: str
    deployed_at: str
    block_height: int

    kind = "escrow"

    @property
    def txid(self) -> str:
        return self.escrow_txid

    @classmethod
    def for_contract(
        cls,
        contract: Escrow,
        txid: str,
        amount: int,
        block_height: int,
        network: str = config.DEFAULT_NETWORK,
        output_index: int = 0,
    ) -> "EscrowRecord":
        return cls(
            escrow_txid=txid,
            output_index=output_index,
            amount=amount,
            timeout_block=contract.timeout_block,
            requester_address=crypto.address_from_pkh(contract.requester_pkh, network),
            requester_pub=crypto.to_hex(contract.requester_pub),
            worker_address=crypto.address_from_pkh(contract.worker_pkh, network),
            worker_pub=crypto.to_hex(contract.worker_pub),
            deployed_at=crypto.timestamp(),
            block_height=block_height,
        )

    def to_contract(self) -> Escrow:
        try:
            return Escrow(
                requester_pub=crypto.from_hex(self.requester_pub),
                requester_pkh=crypto.pkh_from_address(self.requester_address),
                worker_pub=crypto.from_hex(self.worker_pub),
                worker_pkh=crypto.pkh_from_address(self.worker_address),
                timeout_block=self.timeout_block,
            )
        except ValueError as err:
            raise MalformedInput(
                f"Invalid escrow record {self.escrow_txid}: {err}", "record"
            ) from err

    def matches(self, contract: CovenantContract) -> bool:
        return isinstance(contract, Escrow) and self.to_contract() == contract

    def to_dict(self) -> dict:
        return {
            "escrowTxid": self.escrow_txid,
            "outputIndex": self.output_index,
            "amount": self.amount,
            "timeoutBlock": self.timeout_block,
            "requesterAddress": self.requester_address,
            "requesterPub": self.requester_pub,
            "workerAddress": self.worker_address,
            "workerPub": self.worker_pub,
            "deployedAt": self.deployed_at,
            "blockHeight": self.block_height,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EscrowRecord":
        return cls(
            escrow_txid=_require(data, "escrowTxid", str),
            output_index=data.get("outputIndex", 0),
            amount=_require(data, "amount", int),
            timeout_block=_require(data, "timeoutBlock", int),
            requester_address=_require(data, "requesterAddress", str),
            requester_pub=_require(data, "requesterPub", str),
            worker_address=_require(data, "workerAddress", str),
            worker_pub=_require(data, "workerPub", str),
            deployed_at=data.get("deployedAt", ""),
            block_height=data.get("blockHeight", 0),
        )


Record = Union[BondRecord, EscrowRecord]


def record_from_dict(data: dict) -> Record:
    """Decode a record of either kind from its JSON object.

    Raises:
        MalformedInput: When the object is neither record shape.
    """
    if not isinstance(data, dict):
        raise MalformedInput("Contract record must be a JSON object", "record")
    if "bondTxid" in data:
        return BondRecord.from_dict(data)
    if "escrowTxid" in data:
        return EscrowRecord.from_dict(data)
    raise MalformedInput("Record has neither bondTxid nor escrowTxid", "record")


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class MemoryStore:
    """In-memory record store backed by a dict.

    Records are frozen dataclasses, so no copying is needed on put or get.
    """

    def __init__(self) -> None:
        self._data: dict[str, Record] = {}

    def put(self, record: Record) -> None:
        """Store a record under its txid.

        Raises:
            ValueError: When the record has no txid.
        """
        if not record.txid or record.txid.strip() == "":
            raise ValueError("put(): record txid must be a non-empty string")
        self._data[record.txid] = record

    def get(self, txid: str) -> Optional[Record]:
        """Retrieve a record by full txid or a unique txid prefix.

        Returns:
            The record, or None if not found.
        """
        if not txid or not isinstance(txid, str) or txid.strip() == "":
            raise ValueError("get(): txid must be a non-empty string")
        if txid in self._data:
            return self._data[txid]
        matches = [r for key, r in self._data.items() if key.startswith(txid)]
        return matches[0] if len(matches) == 1 else None

    def delete(self, txid: str) -> bool:
        if txid in self._data:
            del self._data[txid]
            return True
        return False

    def list(self, kind: Optional[str] = None) -> list[Record]:
        return [r for r in self._data.values() if kind is None or r.kind == kind]

    def has(self, txid: str) -> bool:
        return txid in self._data

    def count(self) -> int:
        return len(self._data)


class FileStore:
    """Record store keeping one JSON file per contract.

    Files are named after the first 16 hex characters of the txid, under
    ``<root>/bonds`` or ``<root>/escrows``.
    """

    def __init__(self, root: str) -> None:
        self.root = root

    def _dir(self, kind: str) -> str:
        return os.path.join(self.root, config.BONDS_DIR if kind == "bond" else config.ESCROWS_DIR)

    def _path(self, kind: str, txid: str) -> str:
        return os.path.join(self._dir(kind), f"{txid[:16]}.json")

    def _load(self, path: str) -> Record:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as err:
            raise MalformedInput(f"Invalid JSON in {path}: {err}", "record") from err
        return record_from_dict(data)

    def put(self, record: Record) -> str:
        """Write a record; returns the file path."""
        if not record.txid or record.txid.strip() == "":
            raise ValueError("put(): record txid must be a non-empty string")
        os.makedirs(self._dir(record.kind), exist_ok=True)
        path = self._path(record.kind, record.txid)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(record.to_dict(), fh, indent=2)
        log.info(f"State: {path}")
        return path

    def get(self, txid: str) -> Optional[Record]:
        """Load the record whose txid starts with ``txid``.

        Raises:
            MalformedInput: When the matching file is not a valid record.
        """
        if not txid or not isinstance(txid, str) or txid.strip() == "":
            raise ValueError("get(): txid must be a non-empty string")
        for kind in ("bond", "escrow"):
            directory = self._dir(kind)
            if not os.path.isdir(directory):
                continue
            for name in sorted(os.listdir(directory)):
                if not name.endswith(".json"):
                    continue
                stem = name[:-len(".json")]
                if not (txid.startswith(stem) or stem.startswith(txid)):
                    continue
                record = self._load(os.path.join(directory, name))
                if record.txid.startswith(txid):
                    return record
        return None

    def delete(self, txid: str) -> bool:
        record = self.get(txid)
        if record is None:
            return False
        os.remove(self._path(record.kind, record.txid))
        return True

    def list(self, kind: Optional[str] = None) -> list[Record]:
        records = []
        for k in ("bond", "escrow"):
            if kind is not None and k != kind:
                continue
            directory = self._dir(k)
            if not os.path.isdir(directory):
                continue
            for name in sorted(os.listdir(directory)):
                if name.endswith(".json"):
                    records.append(self._load(os.path.join(directory, name)))
        return records

    def has(self, txid: str) -> bool:
        return self.get(txid) is not None

    def count(self) -> int:
        return len(self.list())
