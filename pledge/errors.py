"""
Pledge error taxonomy.

Every failure the core can detect locally is raised as one of these classes
before anything is broadcast. The ``check`` attribute names the check that
failed so callers can report it without parsing the message.
"""

from __future__ import annotations


class PledgeError(Exception):
    """Base class for all pledge errors."""

    def __init__(self, message: str, check: str = ""):
        self.check = check
        super().__init__(message)


class PreconditionFailure(PledgeError):
    """The attempted operation cannot run in the current ledger state.

    Examples: the UTXO is already spent, the lock height has not been
    reached, the wallet does not hold the key for the required role.
    """


class PredicateViolation(PledgeError):
    """The spend would be rejected by the covenant predicate."""


class MalformedInput(PledgeError):
    """External data (scripts, transactions, records, oracle payloads) is invalid."""


class TransportFailure(PledgeError):
    """The chain oracle could not be reached or returned an error."""


class BroadcastRejected(TransportFailure):
    """The network refused a broadcast transaction."""
