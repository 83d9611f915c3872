"""Generate a local Ed25519 signing key and trust store for development."""
import sys

from certledger.config import SIGNING_KEY_PATH, TRUST_STORE_PATH
from certledger.keys import generate_keypair

kid = sys.argv[1] if len(sys.argv) > 1 else "certledger-signing-01"
generate_keypair(SIGNING_KEY_PATH, TRUST_STORE_PATH, kid)
print(f"Generated {SIGNING_KEY_PATH} + {TRUST_STORE_PATH} ({kid}).")
