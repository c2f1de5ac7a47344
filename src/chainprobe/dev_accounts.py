"""Dev chain accounts, derived deterministically from well-known URIs and seeds."""

from __future__ import annotations

from .config import FACILITATOR_SEED
from .crypto import Keypair

ALICE_KEY = Keypair.from_uri("//Alice")
BOB_KEY = Keypair.from_uri("//Bob")
CHARLIE_KEY = Keypair.from_uri("//Charlie")
DAVE_KEY = Keypair.from_uri("//Dave")
FACILITATOR_KEY = Keypair.from_seed(FACILITATOR_SEED)

# 32-byte Ed25519 public keys, used as account identities
ALICE = ALICE_KEY.public_key
BOB = BOB_KEY.public_key
CHARLIE = CHARLIE_KEY.public_key
DAVE = DAVE_KEY.public_key
FACILITATOR = FACILITATOR_KEY.public_key

# Funded at genesis; the facilitator starts empty.
ENDOWED_ACCOUNTS = (ALICE, BOB, CHARLIE, DAVE)

KEYS_BY_NAME: dict[str, Keypair] = {
    "alice": ALICE_KEY,
    "bob": BOB_KEY,
    "charlie": CHARLIE_KEY,
    "dave": DAVE_KEY,
    "facilitator": FACILITATOR_KEY,
}


def name_of(identity: bytes) -> str:
    for name, key in KEYS_BY_NAME.items():
        if key.public_key == identity:
            return name
    return "0x" + identity.hex()[:16]
