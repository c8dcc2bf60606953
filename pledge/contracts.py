"""
Pledge covenant contracts: Bond and Escrow.

Each contract is a locking predicate over a single UTXO. The predicate checks
a role signature, an optional block-height gate, the payout amount, and that
the spending transaction's outputs are exactly the payout the operation
requires (see :mod:`pledge.commitment`).

Contracts keep no state outside their locking script, so every contract can
be rebuilt from the funding transaction alone with ``from_tx``.

Locking script layout::

    <kind tag> <code hash> <field 1> ... <field n> <drops> <predicate>

The state pushes are dropped straight away; the predicate that follows has
every field compiled into it (see :mod:`pledge.predicate`).

Unlocking script layout::

    <sighash preimage> <signature || sighash byte> <amount> <method selector>
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import ClassVar, Optional

from . import config, crypto, predicate, script
from .commitment import build_destination_output, commit, commitment_matches
from .errors import MalformedInput, PredicateViolation
from .tx import Transaction


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

class Operation(Enum):
    """Spending operations across both contract kinds."""
    RELEASE = "release"
    SLASH = "slash"
    APPROVE = "approve"
    REFUND = "refund"
    TIMEOUT = "timeout"


class ContractStatus(Enum):
    """Lifecycle state of a contract UTXO. Everything but OPEN is terminal."""
    OPEN = "open"
    RELEASED = "released"
    SLASHED = "slashed"
    APPROVED = "approved"
    REFUNDED = "refunded"
    TIMED_OUT = "timed_out"
    SPENT = "spent"  # spent by a transaction we cannot attribute


@dataclass(frozen=True)
class OperationRule:
    """What one operation requires of its spending transaction."""
    operation: Operation
    kind: str
    signer: str  # role; the key lives in the "<signer>_pub" field
    recipient: str  # field holding the payout public key hash
    status: ContractStatus
    gate: Optional[str] = None  # field holding the minimum locktime
    gate_message: str = ""


OPERATIONS: dict[Operation, OperationRule] = {
    Operation.RELEASE: OperationRule(
        Operation.RELEASE, "bond", "bondholder", "bondholder_pkh",
        ContractStatus.RELEASED, gate="lock_until", gate_message="bond still locked",
    ),
    Operation.SLASH: OperationRule(
        Operation.SLASH, "bond", "slasher", "slash_dest_pkh", ContractStatus.SLASHED,
    ),
    Operation.APPROVE: OperationRule(
        Operation.APPROVE, "escrow", "requester", "worker_pkh", ContractStatus.APPROVED,
    ),
    Operation.REFUND: OperationRule(
        Operation.REFUND, "escrow", "worker", "requester_pkh", ContractStatus.REFUNDED,
    ),
    Operation.TIMEOUT: OperationRule(
        Operation.TIMEOUT, "escrow", "requester", "requester_pkh",
        ContractStatus.TIMED_OUT, gate="timeout_block",
        gate_message="escrow not yet timed out",
    ),
}


# ---------------------------------------------------------------------------
# Spend context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SpendContext:
    """The parts of a spending transaction a predicate can observe.

    ``hash_outputs`` and ``sighash`` come from the FORKID signature-hash
    preimage of the input being evaluated.
    """
    locktime: int
    sequence: int
    utxo_value: int
    hash_outputs: bytes
    sighash: bytes

    @classmethod
    def from_transaction(
        cls, tx: Transaction, input_index: int, prev_script: bytes, prev_value: int
    ) -> "SpendContext":
        return cls(
            locktime=tx.locktime,
            sequence=tx.inputs[input_index].sequence,
            utxo_value=prev_value,
            hash_outputs=tx.hash_outputs(),
            sighash=tx.sighash(input_index, prev_script=prev_script, prev_value=prev_value),
        )


# ---------------------------------------------------------------------------
# Field codecs
# ---------------------------------------------------------------------------

def _check_field(name: str, codec: str, value) -> None:
    if codec == "pkh":
        if not isinstance(value, (bytes, bytearray)) or len(value) != 20:
            raise ValueError(f"{name} must be a 20-byte public key hash")
    elif codec == "pub":
        if not crypto.is_public_key(value):
            raise ValueError(f"{name} must be a 33-byte compressed public key")
    elif codec == "height":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name} must be an integer block height")
        if not 0 <= value < config.LOCKTIME_THRESHOLD:
            raise ValueError(
                f"{name} must be a block height in [0, {config.LOCKTIME_THRESHOLD}), got {value}"
            )
    else:
        raise ValueError(f"Unknown field codec: {codec}")


def _encode_field(codec: str, value) -> bytes:
    if codec == "height":
        return script.encode_num(value)
    return bytes(value)


def _decode_field(codec: str, data: bytes):
    if codec == "height":
        return script.decode_num(data)
    return bytes(data)


def encode_state(pushes: list[bytes]) -> bytes:
    """State header of a locking script: the pushes, then drops for each."""
    return b"".join(script.push_minimal(p) for p in pushes) + predicate.drop_items(len(pushes))


# ---------------------------------------------------------------------------
# Contract base
# ---------------------------------------------------------------------------

class CovenantContract:
    """Behaviour shared by Bond and Escrow.

    Subclasses are frozen dataclasses that declare ``KIND``, ``TAG``,
    ``METHODS`` (the method table, whose order defines the selectors) and
    ``CODECS`` (one codec per dataclass field, in declaration order).
    """

    KIND: ClassVar[str]
    TAG: ClassVar[bytes]
    METHODS: ClassVar[tuple[Operation, ...]]
    CODECS: ClassVar[tuple[str, ...]]

    def __post_init__(self) -> None:
        for f, codec in zip(fields(self), self.CODECS):
            _check_field(f.name, codec, getattr(self, f.name))

    # -- predicate identity ---------------------------------------------------

    @classmethod
    def code_hash(cls) -> bytes:
        """Identifier of the predicate body: a hash of the method table."""
        signature = f"{cls.__name__}({','.join(op.value for op in cls.METHODS)})"
        return crypto.sha256(signature.encode("utf-8"))

    # -- locking script codec -----------------------------------------------

    def state_pushes(self) -> list[bytes]:
        pushes = [self.TAG, self.code_hash()]
        for f, codec in zip(fields(self), self.CODECS):
            pushes.append(_encode_field(codec, getattr(self, f.name)))
        return pushes

    def predicate_script(self) -> bytes:
        """The executable part of the locking script, one branch per method."""
        return predicate.compile_predicate([
            predicate.compile_branch(
                self.signer_key(op), self.recipient(op), self.threshold(op)
            )
            for op in self.METHODS
        ])

    def locking_script(self) -> bytes:
        return encode_state(self.state_pushes()) + self.predicate_script()

    @classmethod
    def from_locking_script(cls, locking_script: bytes):
        """Rebuild the contract's fields from its locking script.

        The fields come from the state header. The rest of the script must
        be exactly the predicate those fields compile to.

        Raises:
            MalformedInput: When the script is not this contract kind, a
                field fails validation, or the predicate differs.
        """
        pushes = []
        for chunk in script.parse_script(locking_script):
            if not chunk.is_push:
                break
            pushes.append(chunk.data)
        expected = 2 + len(cls.CODECS)
        if len(pushes) != expected:
            raise MalformedInput(
                f"{cls.__name__} locking script has {len(pushes)} state pushes, "
                f"expected {expected}",
                "locking_script",
            )
        if pushes[0] != cls.TAG:
            raise MalformedInput(
                f"Not a {cls.__name__} locking script (tag {pushes[0]!r})", "locking_script"
            )
        if not crypto.constant_time_equal(pushes[1], cls.code_hash()):
            raise MalformedInput(
                f"{cls.__name__} code hash mismatch: unsupported contract revision",
                "locking_script",
            )
        values = [
            _decode_field(codec, data) for codec, data in zip(cls.CODECS, pushes[2:])
        ]
        try:
            contract = cls(*values)
        except ValueError as err:
            raise MalformedInput(str(err), "locking_script") from err
        if contract.locking_script() != bytes(locking_script):
            raise MalformedInput(
                f"{cls.__name__} predicate body does not match its state", "locking_script"
            )
        return contract

    @classmethod
    def from_tx(cls, tx: Transaction, output_index: int = 0):
        """Rebuild a contract from its funding transaction.

        Returns:
            A ``(contract, value)`` tuple, value being the locked satoshis.
        """
        if not 0 <= output_index < len(tx.outputs):
            raise MalformedInput(
                f"Funding transaction has no output {output_index}", "output_index"
            )
        output = tx.outputs[output_index]
        return cls.from_locking_script(output.script), output.value

    # -- operations -----------------------------------------------------------

    def rule(self, operation: Operation) -> OperationRule:
        rule = OPERATIONS[operation]
        if rule.kind != self.KIND:
            raise PredicateViolation(
                f"{operation.value} is not a {self.KIND} operation", "operation"
            )
        return rule

    def signer_key(self, operation: Operation) -> bytes:
        return getattr(self, f"{self.rule(operation).signer}_pub")

    def recipient(self, operation: Operation) -> bytes:
        return getattr(self, self.rule(operation).recipient)

    def threshold(self, operation: Operation) -> Optional[int]:
        gate = self.rule(operation).gate
        return getattr(self, gate) if gate else None

    def expected_outputs(self, operation: Operation, amount: int) -> list[bytes]:
        return [build_destination_output(self.recipient(operation), amount)]

    def selector(self, operation: Operation) -> int:
        self.rule(operation)
        return self.METHODS.index(operation)

    def evaluate(
        self, operation: Operation, ctx: SpendContext, signature: bytes, amount: int
    ) -> None:
        """Run the predicate for ``operation``.

        Args:
            operation: The method being called.
            ctx: What the spending transaction exposes to the predicate.
            signature: DER signature followed by the sighash type byte.
            amount: Payout amount in satoshis.

        Raises:
            PredicateViolation: On the first failing check.
        """
        rule = self.rule(operation)

        if not signature or signature[-1] != config.DEFAULT_SIGHASH:
            raise PredicateViolation(
                f"invalid {rule.signer} signature: unsupported sighash type", "signature"
            )
        if not crypto.verify_digest(ctx.sighash, signature[:-1], self.signer_key(operation)):
            raise PredicateViolation(f"invalid {rule.signer} signature", "signature")

        if rule.gate:
            threshold = getattr(self, rule.gate)
            if ctx.locktime >= config.LOCKTIME_THRESHOLD or ctx.locktime < threshold:
                raise PredicateViolation(rule.gate_message, "locktime")
            if ctx.sequence == config.FINAL_SEQUENCE:
                raise PredicateViolation(
                    f"{rule.gate_message}: final sequence disables nLockTime",
                    "sequence_final",
                )

        if isinstance(amount, bool) or not isinstance(amount, int) \
                or not 0 < amount <= ctx.utxo_value:
            raise PredicateViolation(
                f"invalid amount: {amount} (must be in (0, {ctx.utxo_value}])", "amount"
            )

        expected = commit(self.expected_outputs(operation, amount))
        if not commitment_matches(expected, ctx.hash_outputs):
            raise PredicateViolation("hashOutputs mismatch", "commitment")

    # -- unlocking script -----------------------------------------------------

    def unlocking_script(
        self, operation: Operation, signature: bytes, amount: int, preimage: bytes
    ) -> bytes:
        return b"".join([
            script.push_minimal(preimage),
            script.push_minimal(signature),
            script.push_number(amount),
            script.push_number(self.selector(operation)),
        ])

    def decode_unlocking_script(
        self, unlocking: bytes
    ) -> tuple[Operation, bytes, int, bytes]:
        """Split an unlocking script into ``(operation, signature, amount, preimage)``.

        Raises:
            MalformedInput: When the script does not match the layout.
        """
        pushes = script.pushes_only(script.parse_script(unlocking), "unlocking script")
        if len(pushes) != 4:
            raise MalformedInput(
                f"Unlocking script has {len(pushes)} pushes, expected 4", "unlocking_script"
            )
        preimage, signature, amount_bytes, selector_bytes = pushes
        selector = script.decode_num(selector_bytes)
        if not 0 <= selector < len(self.METHODS):
            raise MalformedInput(
                f"Unknown {self.KIND} method selector {selector}", "unlocking_script"
            )
        return (
            self.METHODS[selector], signature, script.decode_num(amount_bytes), preimage
        )


# ---------------------------------------------------------------------------
# Bond
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Bond(CovenantContract):
    """Value locked to a bondholder until a block height, slashable at any time.

    * ``release``: bondholder signature, locktime >= ``lock_until``, pays the
      bondholder.
    * ``slash``: slasher signature, no time restriction, pays
      ``slash_dest_pkh``.

    Both take an explicit payout amount; the remainder of the UTXO value is
    the transaction fee.
    """
    bondholder_pkh: bytes
    bondholder_pub: bytes
    lock_until: int
    slasher_pub: bytes
    slash_dest_pkh: bytes

    KIND: ClassVar[str] = "bond"
    TAG: ClassVar[bytes] = b"BOND1"
    METHODS: ClassVar[tuple[Operation, ...]] = (Operation.RELEASE, Operation.SLASH)
    CODECS: ClassVar[tuple[str, ...]] = ("pkh", "pub", "height", "pub", "pkh")

    def release(self, ctx: SpendContext, signature: bytes, amount: int) -> None:
        self.evaluate(Operation.RELEASE, ctx, signature, amount)

    def slash(self, ctx: SpendContext, signature: bytes, amount: int) -> None:
        self.evaluate(Operation.SLASH, ctx, signature, amount)


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Escrow(CovenantContract):
    """Three-way conditional payment between a requester and a worker."""
    requester_pub: bytes
    requester_pkh: bytes
    worker_pub: bytes
    worker_pkh: bytes
    timeout_block: int

    KIND: ClassVar[str] = "escrow"
    TAG: ClassVar[bytes] = b"ESCROW1"
    METHODS: ClassVar[tuple[Operation, ...]] = (
        Operation.APPROVE, Operation.REFUND, Operation.TIMEOUT,
    )
    CODECS: ClassVar[tuple[str, ...]] = ("pub", "pkh", "pub", "pkh", "height")

    def approve(self, ctx: SpendContext, signature: bytes, amount: int) -> None:
        """Requester approves the work; pays the worker."""
        self.evaluate(Operation.APPROVE, ctx, signature, amount)

    def refund(self, ctx: SpendContext, signature: bytes, amount: int) -> None:
        """Worker admits non-delivery; pays the requester back."""
        self.evaluate(Operation.REFUND, ctx, signature, amount)

    def timeout(self, ctx: SpendContext, signature: bytes, amount: int) -> None:
        """Requester reclaims after ``timeout_block``."""
        self.evaluate(Operation.TIMEOUT, ctx, signature, amount)


CONTRACT_KINDS: dict[str, type] = {Bond.KIND: Bond, Escrow.KIND: Escrow}


def decode_contract(locking_script: bytes) -> CovenantContract:
    """Decode a locking script of either contract kind."""
    pushes = script.parse_script(locking_script)
    tag = pushes[0].data if pushes and pushes[0].is_push else None
    for cls in CONTRACT_KINDS.values():
        if tag == cls.TAG:
            return cls.from_locking_script(locking_script)
    raise MalformedInput("Locking script is not a known covenant", "locking_script")


# ---------------------------------------------------------------------------
# Whole-transaction checks
# ---------------------------------------------------------------------------

def verify_spend(
    contract: CovenantContract, tx: Transaction, input_index: int, utxo_value: int
) -> Operation:
    """Evaluate the contract predicate against a complete spending transaction.

    Args:
        contract: The contract locking the spent output.
        tx: The signed spending transaction.
        input_index: Index of the input spending the contract.
        utxo_value: Value of the contract UTXO.

    Returns:
        The operation the transaction invokes.

    Raises:
        MalformedInput: When the unlocking script cannot be decoded.
        PredicateViolation: When the predicate rejects the spend.
    """
    operation, signature, amount, preimage = contract.decode_unlocking_script(
        tx.inputs[input_index].script_sig
    )
    locking = contract.locking_script()
    ctx = SpendContext.from_transaction(tx, input_index, locking, utxo_value)
    contract.evaluate(operation, ctx, signature, amount)

    actual = tx.sighash_preimage(input_index, prev_script=locking, prev_value=utxo_value)
    if preimage != actual:
        raise PredicateViolation(
            "pushed preimage is not this input's sighash preimage", "preimage"
        )
    if predicate.preimage_signature(preimage) is None:
        raise PredicateViolation(
            "preimage gives no canonical signature; change the input sequence", "preimage"
        )
    return operation


def classify_spend(
    contract: CovenantContract, spending_tx: Transaction, txid: str, output_index: int = 0
) -> ContractStatus:
    """Work out which terminal state a spending transaction moved a contract to.

    The method selector in the unlocking script decides. If it cannot be
    read, the first output's recipient is matched against the operations'
    recipients; an ambiguous or unknown recipient yields ``SPENT``.
    """
    for txin in spending_tx.inputs:
        if txin.prev_txid != txid or txin.prev_index != output_index:
            continue
        try:
            operation = contract.decode_unlocking_script(txin.script_sig)[0]
            return OPERATIONS[operation].status
        except MalformedInput:
            break

    if not spending_tx.outputs:
        return ContractStatus.SPENT
    paid_to = script.p2pkh_pkh(spending_tx.outputs[0].script)
    matches = {
        OPERATIONS[op].status
        for op in contract.METHODS
        if paid_to is not None and contract.recipient(op) == paid_to
    }
    if len(matches) == 1:
        return matches.pop()
    return ContractStatus.SPENT
