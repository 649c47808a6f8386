"""
Verification attestation encoding and signing tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import hashlib
import struct

import pytest


PROOF = bytes(range(256))
INPUTS = bytes(32) + bytes([1]) * 32
KEY = b"verifying-key-bytes"


class TestAttestationEncoding:
    """Binary and JSON forms."""

    def test_binary_layout(self, signer):
        from shieldpool.attestation import ATTESTATION_SIZE, MESSAGE_SIZE

        att = signer.attest(PROOF, INPUTS, KEY, is_valid=True, timestamp=1_700_000_123)
        data = att.to_bytes()

        assert MESSAGE_SIZE == 105
        assert len(data) == ATTESTATION_SIZE == 169
        assert data[0:32] == hashlib.sha256(PROOF).digest()
        assert data[32:64] == hashlib.sha256(INPUTS).digest()
        assert data[64:96] == hashlib.sha256(KEY).digest()
        assert data[96] == 1
        assert struct.unpack("<q", data[97:105])[0] == 1_700_000_123

    def test_binary_roundtrip(self, signer):
        from shieldpool.attestation import VerificationAttestation

        att = signer.attest(PROOF, INPUTS, KEY, is_valid=False, timestamp=-5)
        assert VerificationAttestation.from_bytes(att.to_bytes()) == att

    def test_bad_binary_rejected(self, signer):
        from shieldpool.attestation import VerificationAttestation
        from shieldpool.hardening import InvalidInputError

        data = bytearray(signer.attest(PROOF, INPUTS, KEY, timestamp=1).to_bytes())
        with pytest.raises(InvalidInputError):
            VerificationAttestation.from_bytes(bytes(data[:-1]))
        data[96] = 2
        with pytest.raises(InvalidInputError):
            VerificationAttestation.from_bytes(bytes(data))

    def test_json_form_uses_hex(self, signer):
        from shieldpool.attestation import VerificationAttestation

        att = signer.attest(PROOF, INPUTS, KEY, timestamp=42)
        d = att.to_dict()
        assert d["proof_hash"] == hashlib.sha256(PROOF).hexdigest()
        assert d["is_valid"] is True
        assert len(d["signature"]) == 128
        assert VerificationAttestation.from_dict(d) == att

    def test_from_dict_collects_errors(self):
        from shieldpool.attestation import VerificationAttestation
        from shieldpool.hardening import InvalidInputError

        with pytest.raises(InvalidInputError) as exc_info:
            VerificationAttestation.from_dict({
                "proof_hash": "00" * 31,
                "public_inputs_hash": "00" * 32,
                "verifying_key_hash": "00" * 32,
                "is_valid": "yes",
                "timestamp": 1 << 63,
                "signature": "00" * 64,
            })
        fields = {e.field for e in exc_info.value.errors}
        assert fields == {"proof_hash", "is_valid", "timestamp"}


class TestSigning:
    """Ed25519 signatures over the 105-byte message."""

    def test_signature_verifies(self, signer):
        from shieldpool.attestation import check_signature

        att = signer.attest(PROOF, INPUTS, KEY, timestamp=7)
        assert check_signature(att, signer.public_key)

    def test_modified_message_fails(self, signer):
        from dataclasses import replace

        from shieldpool.attestation import check_signature

        att = signer.attest(PROOF, INPUTS, KEY, is_valid=False, timestamp=7)
        assert not check_signature(replace(att, is_valid=True), signer.public_key)
        assert not check_signature(replace(att, timestamp=8), signer.public_key)

    def test_other_signer_fails(self, signer):
        from shieldpool.attestation import AttestationSigner, check_signature

        att = signer.attest(PROOF, INPUTS, KEY, timestamp=7)
        assert not check_signature(att, AttestationSigner.generate().public_key)

    def test_private_key_roundtrip(self, signer):
        from shieldpool.attestation import AttestationSigner

        clone = AttestationSigner.from_private_bytes(signer.private_bytes())
        assert clone.public_key_bytes == signer.public_key_bytes
        assert len(signer.public_key_bytes) == 32

    def test_create_attestation_helper(self, signer):
        from shieldpool.attestation import check_signature, create_attestation

        att = create_attestation(signer, PROOF, INPUTS, KEY, timestamp=99)
        assert att.timestamp == 99
        assert check_signature(att, signer.public_key)

    def test_key_length_checked(self):
        from shieldpool.attestation import AttestationSigner, load_public_key
        from shieldpool.hardening import InvalidInputError

        with pytest.raises(InvalidInputError):
            load_public_key(bytes(31))
        with pytest.raises(InvalidInputError):
            AttestationSigner.from_private_bytes(bytes(16))
