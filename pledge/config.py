"""
Pledge configuration constants.

Fees mirror the amounts the deployment and spending tools have always used
on mainnet. Everything here is plain module state; callers override values
by passing explicit arguments.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Fees (satoshis)
# ---------------------------------------------------------------------------

DEPLOY_FEE = 3000
RELEASE_FEE = 1000
SLASH_FEE = 500
ESCROW_FEE = 500
ASSERT_FEE = 500

# Change outputs at or below this value are dropped into the fee.
DUST_LIMIT = 546

# ---------------------------------------------------------------------------
# Transaction fields
# ---------------------------------------------------------------------------

TX_VERSION = 1

# A final sequence disables nLockTime for the whole transaction.
FINAL_SEQUENCE = 0xFFFFFFFF
LOCKTIME_SEQUENCE = 0xFFFFFFFE

# Input sequences tried, counting down, before giving up on a preimage whose
# derived signature is canonical.
PREIMAGE_ATTEMPTS = 256

# nLockTime values below this are block heights, above are unix times.
LOCKTIME_THRESHOLD = 500_000_000

SIGHASH_ALL = 0x01
SIGHASH_FORKID = 0x40
DEFAULT_SIGHASH = SIGHASH_ALL | SIGHASH_FORKID

# ---------------------------------------------------------------------------
# Networks
# ---------------------------------------------------------------------------

NETWORKS = {
    "main": {
        "name": "BSV mainnet",
        "pubkey_version": 0x00,
        "wif_version": 0x80,
        "api": "https://api.whatsonchain.com/v1/bsv/main",
        "explorer": "https://whatsonchain.com/tx/",
    },
    "test": {
        "name": "BSV testnet",
        "pubkey_version": 0x6F,
        "wif_version": 0xEF,
        "api": "https://api.whatsonchain.com/v1/bsv/test",
        "explorer": "https://test.whatsonchain.com/tx/",
    },
}

DEFAULT_NETWORK = "main"

# Seconds before an oracle HTTP call is abandoned.
HTTP_TIMEOUT = 30

# Directories under a FileStore root.
BONDS_DIR = "bonds"
ESCROWS_DIR = "escrows"

# ---------------------------------------------------------------------------
# Deployment defaults
# ---------------------------------------------------------------------------

DEFAULT_CONTRACT_AMOUNT = 10000
DEFAULT_LOCK_BLOCKS = 10
DEFAULT_TIMEOUT_BLOCKS = 100
