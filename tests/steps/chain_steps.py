"""Step definitions for chain linkage, tampering and signatures."""
from __future__ import annotations

import json

from pytest_bdd import parsers, then, when

from conftest import BDDTestContext


def _rewrite_chain(test_context: BDDTestContext, name: str, edit) -> None:
    path = test_context.paths.find_chain(test_context.resolve_id(name))
    with open(path, "r", encoding="utf-8") as f:
        lines = [json.loads(line) for line in f if line.strip()]
    lines = edit(lines)
    with open(path, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(json.dumps(line) + "\n")


@when(parsers.parse('the data of record {index:d} of "{name}" is edited on disk'))
def edit_record_data(test_context: BDDTestContext, index: int, name: str):
    def edit(lines):
        lines[index]["data"]["cumulative_seconds"] = 99999
        return lines

    _rewrite_chain(test_context, name, edit)


@when(parsers.parse('record {index:d} of "{name}" is removed on disk'))
def remove_record(test_context: BDDTestContext, index: int, name: str):
    def edit(lines):
        del lines[index]
        return lines

    _rewrite_chain(test_context, name, edit)


@then(parsers.parse('verifying "{name}" reports a valid chain with valid signatures'))
def verify_valid_signed(test_context: BDDTestContext, name: str):
    from session_chain.chain import verify_session
    from session_chain.keystore import read_public_key

    result = verify_session(test_context.paths, test_context.resolve_id(name), read_public_key(test_context.paths))
    assert result.valid, result.to_dict()
    assert result.signature_valid, result.to_dict()


@then(parsers.parse('verifying "{name}" reports a valid chain without valid signatures'))
def verify_valid_unsigned(test_context: BDDTestContext, name: str):
    from session_chain.chain import verify_session
    from session_chain.keystore import read_public_key

    result = verify_session(test_context.paths, test_context.resolve_id(name), read_public_key(test_context.paths))
    assert result.valid, result.to_dict()
    assert result.signature_valid is False


@then(parsers.parse('verifying "{name}" reports a broken chain at record {index:d} with "{reason}"'))
def verify_broken(test_context: BDDTestContext, name: str, index: int, reason: str):
    from session_chain.chain import verify_session

    result = verify_session(test_context.paths, test_context.resolve_id(name))
    assert result.valid is False
    assert result.broken_at == index
    assert result.reason == reason


@then(parsers.parse('every record of "{name}" carries a signature'))
def every_record_signed(test_context: BDDTestContext, name: str):
    for record in test_context.records(test_context.resolve_id(name)):
        assert record.signature != "unsigned"
        assert len(bytes.fromhex(record.signature)) == 64


@then(parsers.parse('every record of "{name}" is unsigned'))
def every_record_unsigned(test_context: BDDTestContext, name: str):
    for record in test_context.records(test_context.resolve_id(name)):
        assert record.signature == "unsigned"


@then("the start result reports a signed session")
def start_result_signed(test_context: BDDTestContext):
    assert test_context.last_result["signed"] is True
    assert "· signed" in test_context.last_result["message"]


@then(parsers.parse('the seal of "{name}" covers the session_end hash'))
def seal_covers_end_hash(test_context: BDDTestContext, name: str):
    records = test_context.records(test_context.resolve_id(name))
    end_record, seal_record = records[-2], records[-1]
    seal = json.loads(seal_record.data["seal"])
    assert seal["chain_end_hash"] == end_record.hash
    assert seal["record_count"] == len(records)
    assert seal["session_id"] == test_context.resolve_id(name)


@then(parsers.parse('the seal signature of "{name}" verifies against the public key'))
def seal_signature_verifies(test_context: BDDTestContext, name: str):
    from session_chain.chain import sha256_hex, verify_signature
    from session_chain.keystore import read_public_key

    seal_record = test_context.records(test_context.resolve_id(name))[-1]
    seal_hash = sha256_hex(seal_record.data["seal"])
    assert verify_signature(seal_hash, seal_record.data["seal_signature"], read_public_key(test_context.paths))
