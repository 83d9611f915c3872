"""
Key management for the evidence ledger.

Ed25519 key providers used to sign verification tokens and audit package
manifests. Keys live in a JSON file (local/dev) or in AWS KMS; public keys
are published in a trust store keyed by kid.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .util import b64d, b64e

TRUST_STORE_KEYS_FIELD = "certledger_signing_keys"


class KeyProvider(ABC):
    """Signs payloads and exposes the trust store used to check them."""

    def __init__(self, trust_store_path: str):
        self._trust_store_path = trust_store_path
        self._lock = threading.RLock()
        self._trust_store_cache: Optional[Dict[str, Any]] = None
        self._trust_store_mtime: float = 0

    @abstractmethod
    def sign(self, payload: bytes) -> Tuple[str, str]:
        """
        Sign a payload and return (kid, signature_b64).

        Args:
            payload: The canonical JSON bytes to sign
        """

    @abstractmethod
    def get_kid(self) -> str:
        """Get the key ID used for signing."""

    def get_trust_store(self) -> Dict[str, Any]:
        """
        Get trust store with file modification time caching.
        Reloads if file has been modified.
        """
        with self._lock:
            try:
                mtime = os.path.getmtime(self._trust_store_path)
                if self._trust_store_cache is None or mtime > self._trust_store_mtime:
                    with open(self._trust_store_path, "r", encoding="utf-8") as f:
                        self._trust_store_cache = json.load(f)
                    self._trust_store_mtime = mtime
            except FileNotFoundError:
                if self._trust_store_cache is None:
                    raise

            return self._trust_store_cache

    def public_key_for(self, kid: str) -> Optional[str]:
        return public_key_for(self.get_trust_store(), kid)


class FileKeyProvider(KeyProvider):
    """File-based Ed25519 key, loaded once at construction."""

    def __init__(self, signing_key_path: str, trust_store_path: str):
        super().__init__(trust_store_path)
        with open(signing_key_path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        self._kid = raw["kid"]
        self._sk = SigningKey(b64d(raw["private_key_b64"]))

    def sign(self, payload: bytes) -> Tuple[str, str]:
        sig = self._sk.sign(payload).signature
        return self._kid, b64e(sig)

    def get_kid(self) -> str:
        return self._kid


class AwsKmsEd25519Provider(KeyProvider):
    """
    AWS KMS signing provider using Ed25519 keys.

    Requires a SIGN_VERIFY KMS key with ED25519 support.
    Uses KMS Sign API with SigningAlgorithm ED25519_SHA_512 and MessageType RAW.
    """

    def __init__(
        self,
        kms_key_id: str,
        trust_store_path: str,
        region: Optional[str] = None,
        kid: Optional[str] = None
    ):
        super().__init__(trust_store_path)
        self._kms_key_id = kms_key_id
        self._region = region
        self._kid = kid or "aws-kms-ed25519"
        self._client = None

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError(
                    "boto3 required for AWS KMS signing. Install with: pip install certledger[s3]"
                ) from e
            self._client = boto3.client("kms", region_name=self._region)
        return self._client

    def sign(self, payload: bytes) -> Tuple[str, str]:
        client = self._get_client()
        resp = client.sign(
            KeyId=self._kms_key_id,
            Message=payload,
            MessageType="RAW",
            SigningAlgorithm="ED25519_SHA_512"
        )
        return self._kid, b64e(resp["Signature"])

    def get_kid(self) -> str:
        return self._kid


def public_key_for(trust_store: Dict[str, Any], kid: str) -> Optional[str]:
    return (trust_store or {}).get(TRUST_STORE_KEYS_FIELD, {}).get(kid)


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(b64d(public_key_b64))
        vk.verify(payload, b64d(signature_b64))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def generate_keypair(signing_key_path: str, trust_store_path: str,
                     kid: str = "certledger-signing-01") -> str:
    """
    Write a new signing key and publish its public half in the trust store.
    Existing trust store entries are kept. Returns the public key (base64).
    """
    sk = SigningKey.generate()
    Path(signing_key_path).parent.mkdir(parents=True, exist_ok=True)
    Path(trust_store_path).parent.mkdir(parents=True, exist_ok=True)

    with open(signing_key_path, "w", encoding="utf-8") as f:
        json.dump({"kid": kid, "private_key_b64": b64e(bytes(sk))}, f, indent=2)

    trust: Dict[str, Any] = {"trust_store_id": "certledger-trust-store"}
    if os.path.exists(trust_store_path):
        with open(trust_store_path, "r", encoding="utf-8") as f:
            trust = json.load(f)
    public_b64 = b64e(bytes(sk.verify_key))
    trust.setdefault(TRUST_STORE_KEYS_FIELD, {})[kid] = public_b64
    with open(trust_store_path, "w", encoding="utf-8") as f:
        json.dump(trust, f, indent=2)
    return public_b64


def get_key_provider(
    signer_type: str = "file",
    signing_key_path: str = "secrets/certledger_signing_key.json",
    trust_store_path: str = "trust/trust_store.json",
    kms_key_id: Optional[str] = None,
    kms_region: Optional[str] = None,
    kms_kid: Optional[str] = None
) -> KeyProvider:
    """
    Factory function to create the appropriate key provider.

    Args:
        signer_type: "file" or "aws_kms"
        signing_key_path: Path to signing key JSON (for file provider)
        trust_store_path: Path to trust store JSON
        kms_key_id: AWS KMS key ID (for KMS provider)
        kms_region: AWS region (for KMS provider)
        kms_kid: Key ID to use in signatures (for KMS provider)
    """
    if signer_type == "aws_kms":
        if not kms_key_id:
            raise ValueError("AWS_KMS_KEY_ID required for aws_kms signer")
        return AwsKmsEd25519Provider(
            kms_key_id=kms_key_id,
            trust_store_path=trust_store_path,
            region=kms_region,
            kid=kms_kid
        )

    return FileKeyProvider(
        signing_key_path=signing_key_path,
        trust_store_path=trust_store_path
    )
