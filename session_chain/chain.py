"""Chain record hashing, signing and verification.

The hash domain of a record is the canonical JSON of
``{type, session_id, data, prev_hash}``. The record ``id`` and ``timestamp``
are stored alongside but are not hashed, so verification does not depend
on clock values.
"""
from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from .models import RECORD_TYPES, ChainRecord, ChainVerification, RecordPayload
from .utils import GENESIS_HASH, UNSIGNED, canonical_json, generate_record_id, utc_now

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
    from .config import StoragePaths

logger = logging.getLogger(__name__)


def hash_domain(record_type: str, session_id: str, data: Mapping[str, Any], prev_hash: str) -> str:
    return canonical_json({
        "type": record_type,
        "session_id": session_id,
        "data": data,
        "prev_hash": prev_hash,
    })


def compute_hash(record_type: str, session_id: str, data: Mapping[str, Any], prev_hash: str) -> str:
    """SHA-256 hex digest of the canonical hash domain."""
    domain = hash_domain(record_type, session_id, data, prev_hash)
    return hashlib.sha256(domain.encode("utf-8")).hexdigest()


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sign_hash(hash_hex: str, signing_key: Optional["Ed25519PrivateKey"]) -> str:
    """Sign a hash, or return "unsigned" when no usable key is available."""
    if signing_key is None:
        return UNSIGNED
    try:
        return signing_key.sign(hash_hex.encode("utf-8")).hex()
    except (AttributeError, TypeError, ValueError) as exc:
        logger.warning("Signing failed, record left unsigned: %s", exc)
        return UNSIGNED


def build_chain_record(
    record_type: str,
    session_id: str,
    data: Union[RecordPayload, Mapping[str, Any]],
    prev_hash: str,
    signing_key: Optional["Ed25519PrivateKey"] = None,
) -> ChainRecord:
    """Build a fully hashed and optionally signed record. No side effects."""
    if record_type not in RECORD_TYPES:
        raise ValueError(f"Unknown record type '{record_type}'. Expected one of: {', '.join(RECORD_TYPES)}")
    payload: Dict[str, Any] = data.to_dict() if hasattr(data, "to_dict") else dict(data)
    record_hash = compute_hash(record_type, session_id, payload, prev_hash)
    return ChainRecord(
        id=generate_record_id(),
        type=record_type,
        session_id=session_id,
        timestamp=utc_now(),
        data=payload,
        prev_hash=prev_hash,
        hash=record_hash,
        signature=sign_hash(record_hash, signing_key),
    )


def serialize_record(record: ChainRecord) -> str:
    """One JSONL line, without the trailing newline."""
    return json.dumps(record.to_dict(), ensure_ascii=False)


def parse_chain_lines(content: str) -> List[ChainRecord]:
    """Parse chain file content. Raises ValueError on malformed lines."""
    records: List[ChainRecord] = []
    for line_no, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(ChainRecord.from_dict(json.loads(line)))
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"Malformed chain record on line {line_no}: {exc}") from exc
    return records


def read_chain_file(path: str) -> List[ChainRecord]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_chain_lines(f.read())


def verify_record(record: ChainRecord, prev_hash: str) -> bool:
    """Check linkage to the previous hash and recompute the record hash."""
    if record.prev_hash != prev_hash:
        return False
    return record.hash == compute_hash(record.type, record.session_id, record.data, prev_hash)


def verify_signature(hash_hex: str, signature: str, public_key_pem: str) -> bool:
    if signature == UNSIGNED:
        return False
    try:
        public_key = load_pem_public_key(public_key_pem.encode("utf-8"))
        if not isinstance(public_key, Ed25519PublicKey):
            return False
        public_key.verify(bytes.fromhex(signature), hash_hex.encode("utf-8"))
        return True
    except (InvalidSignature, ValueError):
        return False


def verify_chain(records: List[ChainRecord], public_key_pem: Optional[str] = None) -> ChainVerification:
    """Verify hash linkage from GENESIS and, given a public key, every signature."""
    prev_hash = GENESIS_HASH
    signatures_ok = public_key_pem is not None
    for index, record in enumerate(records):
        if not verify_record(record, prev_hash):
            reason = "prev_hash mismatch" if record.prev_hash != prev_hash else "hash mismatch"
            return ChainVerification(
                valid=False, signature_valid=False, record_count=len(records),
                broken_at=index, reason=reason, records=records,
            )
        if public_key_pem and not verify_signature(record.hash, record.signature, public_key_pem):
            return ChainVerification(
                valid=True, signature_valid=False, record_count=len(records),
                broken_at=index, reason="signature mismatch", records=records,
            )
        prev_hash = record.hash
    return ChainVerification(
        valid=True, signature_valid=signatures_ok, record_count=len(records), records=records,
    )


def verify_session(
    paths: "StoragePaths",
    session_id: str,
    public_key_pem: Optional[str] = None,
) -> ChainVerification:
    """Verify a session's chain file from sealed or active storage."""
    path = paths.find_chain(session_id)
    if path is None:
        return ChainVerification(valid=False, signature_valid=False, reason="chain file not found")
    try:
        records = read_chain_file(path)
    except ValueError as exc:
        return ChainVerification(valid=False, signature_valid=False, reason=str(exc))
    return verify_chain(records, public_key_pem)
