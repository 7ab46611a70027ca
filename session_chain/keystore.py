"""Machine-bound keystore for the chain signing key.

The Ed25519 private key is stored PEM-encoded and encrypted with AES-256-GCM
under a key derived (PBKDF2-SHA256) from the host name and user name, so a
keystore copied to another machine cannot be decrypted there.
"""
from __future__ import annotations

import getpass
import logging
import os
import socket
from dataclasses import asdict, dataclass
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import StoragePaths
from .utils import read_json, utc_now, write_json

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000
SALT_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16


@dataclass
class Keystore:
    public_key_pem: str
    encrypted_private_key: str
    iv: str
    tag: str
    salt: str
    created_at: str


def _machine_identity() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{socket.gethostname()}:{user}:session-chain-keystore"


def derive_encryption_key(salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(_machine_identity().encode("utf-8"))


def public_key_pem(signing_key: Ed25519PrivateKey) -> str:
    return signing_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


def generate_keystore() -> Tuple[Keystore, Ed25519PrivateKey]:
    """Create a fresh key pair and its encrypted keystore document."""
    signing_key = Ed25519PrivateKey.generate()
    private_pem = signing_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(derive_encryption_key(salt)).encrypt(iv, private_pem, None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    keystore = Keystore(
        public_key_pem=public_key_pem(signing_key),
        encrypted_private_key=ciphertext.hex(),
        iv=iv.hex(),
        tag=tag.hex(),
        salt=salt.hex(),
        created_at=utc_now(),
    )
    return keystore, signing_key


def decrypt_keystore(keystore: Keystore) -> Ed25519PrivateKey:
    """Decrypt the private key. Raises ValueError if it cannot be recovered."""
    try:
        salt = bytes.fromhex(keystore.salt)
        iv = bytes.fromhex(keystore.iv)
        sealed = bytes.fromhex(keystore.encrypted_private_key) + bytes.fromhex(keystore.tag)
        private_pem = AESGCM(derive_encryption_key(salt)).decrypt(iv, sealed, None)
        key = serialization.load_pem_private_key(private_pem, password=None)
    except (InvalidTag, TypeError, ValueError) as exc:
        raise ValueError(f"Keystore could not be decrypted: {exc}") from exc
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("Keystore does not hold an Ed25519 key")
    return key


def load_keystore(paths: StoragePaths) -> Optional[Keystore]:
    raw = read_json(paths.keystore_file, None)
    if not isinstance(raw, dict):
        return None
    try:
        return Keystore(**{name: raw[name] for name in Keystore.__dataclass_fields__})
    except KeyError:
        return None


def load_or_create(paths: StoragePaths) -> Optional[Ed25519PrivateKey]:
    """Return the signing key, regenerating it if the keystore is missing or corrupt.

    Records signed with a replaced key stay verifiable only against the old
    public key. Returns None only if a new keystore cannot be written either.
    """
    if os.path.exists(paths.keystore_file):
        keystore = load_keystore(paths)
        if keystore is not None:
            try:
                return decrypt_keystore(keystore)
            except ValueError as exc:
                logger.warning("Keystore unusable, generating a new signing key: %s", exc)
        else:
            logger.warning("Keystore %s is corrupt, generating a new signing key", paths.keystore_file)

    keystore, signing_key = generate_keystore()
    try:
        write_json(paths.keystore_file, asdict(keystore))
    except OSError as exc:
        logger.warning("Could not persist keystore, continuing unsigned: %s", exc)
        return None
    return signing_key


def read_public_key(paths: StoragePaths) -> Optional[str]:
    keystore = load_keystore(paths)
    return keystore.public_key_pem if keystore else None
