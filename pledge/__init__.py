"""
Pledge: on-chain trust primitives for a UTXO ledger.

Provides covenant-locked value (Bond, Escrow), the transaction builder
that spends it, the bond-backed ASSERT1 assertion protocol, and the chain
oracle, state store and action layers around them.
"""

from . import actions
from . import assertion
from . import builder
from . import commitment
from . import config
from . import contracts
from . import crypto
from . import errors
from . import oracle
from . import predicate
from . import script
from . import status
from . import store
from . import tx

__version__ = "1.0.0"

__all__ = [
    "actions",
    "assertion",
    "builder",
    "commitment",
    "config",
    "contracts",
    "crypto",
    "errors",
    "oracle",
    "predicate",
    "script",
    "status",
    "store",
    "tx",
]
