"""
Groth16 codec and BN254 pairing verification tests.

Proofs are produced with a simulated trapdoor setup (see conftest), so the
pairing check runs against genuine curve points.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import struct

import pytest


def _scalar(n: int) -> bytes:
    return n.to_bytes(32, "big")


class TestPointCodecs:
    """G1/G2 encodings and validation."""

    def test_g1_roundtrip_and_infinity(self):
        from py_ecc import optimized_bn128 as bn128
        from shieldpool.groth16 import decode_g1, encode_g1

        point = bn128.multiply(bn128.G1, 42)
        data = encode_g1(point)
        assert len(data) == 64
        assert bn128.eq(decode_g1(data), point)
        assert encode_g1(bn128.Z1) == bytes(64)
        assert bn128.is_inf(decode_g1(bytes(64)))

    def test_g1_generator_encoding(self):
        from py_ecc import optimized_bn128 as bn128
        from shieldpool.groth16 import encode_g1

        assert encode_g1(bn128.G1) == _scalar(1) + _scalar(2)

    def test_g2_coefficient_order(self):
        from py_ecc import optimized_bn128 as bn128
        from shieldpool.groth16 import decode_g2, encode_g2

        data = encode_g2(bn128.G2)
        # x.c0 of the standard BN254 G2 generator comes first
        assert data[0:32] == _scalar(
            10857046999023057135944570762232829481370756359578518086990519993285655852781
        )
        assert bn128.eq(decode_g2(data), bn128.G2)

    def test_off_curve_g1_rejected(self):
        from shieldpool.groth16 import decode_g1
        from shieldpool.hardening import InvalidProofError

        with pytest.raises(InvalidProofError):
            decode_g1(_scalar(1) + _scalar(3))

    def test_unreduced_coordinate_rejected(self):
        from shieldpool.groth16 import FIELD_MODULUS, decode_g1
        from shieldpool.hardening import InvalidProofError

        with pytest.raises(InvalidProofError):
            decode_g1(_scalar(FIELD_MODULUS + 1) + _scalar(2))

    def test_wrong_size_rejected(self):
        from shieldpool.groth16 import Proof
        from shieldpool.hardening import InvalidProofError

        with pytest.raises(InvalidProofError):
            Proof.from_bytes(bytes(255))


class TestVerifyingKeyLayout:
    """Key byte layout checks."""

    def test_key_roundtrip(self, groth16_shield_setup):
        from shieldpool.groth16 import KEY_HEADER_SIZE, VerifyingKey, key_layout_count

        data = groth16_shield_setup.key_bytes
        assert len(data) == KEY_HEADER_SIZE + 2 * 64
        assert key_layout_count(data) == 2
        assert VerifyingKey.from_bytes(data).to_bytes() == data
        assert VerifyingKey.from_bytes(data).num_public_inputs == 1

    def test_layout_errors(self):
        from shieldpool.groth16 import key_layout_count
        from shieldpool.hardening import InvalidVerifyingKeyError

        with pytest.raises(InvalidVerifyingKeyError):
            key_layout_count(bytes(100))
        with pytest.raises(InvalidVerifyingKeyError):
            key_layout_count(bytes(448) + struct.pack("<I", 0) + bytes(64))
        with pytest.raises(InvalidVerifyingKeyError):
            key_layout_count(bytes(448) + struct.pack("<I", 2) + bytes(64))

    def test_off_curve_key_point_rejected(self):
        from shieldpool.groth16 import VerifyingKey
        from shieldpool.hardening import InvalidVerifyingKeyError

        data = _scalar(1) + _scalar(3) + bytes(384) + struct.pack("<I", 1) + bytes(64)
        with pytest.raises(InvalidVerifyingKeyError):
            VerifyingKey.from_bytes(data)


class TestPublicInputs:
    """Scalar splitting."""

    def test_split(self):
        from shieldpool.groth16 import split_public_inputs

        assert split_public_inputs(_scalar(7) + _scalar(9)) == [7, 9]

    def test_unreduced_input_rejected(self):
        from shieldpool.groth16 import CURVE_ORDER, split_public_inputs
        from shieldpool.hardening import InvalidPublicInputsError

        with pytest.raises(InvalidPublicInputsError):
            split_public_inputs(_scalar(CURVE_ORDER))
        with pytest.raises(InvalidPublicInputsError):
            split_public_inputs(bytes(31))

    def test_input_count_must_match_key(self, groth16_shield_setup):
        from shieldpool import groth16
        from shieldpool.hardening import InvalidPublicInputsError

        proof = groth16_shield_setup.prove(_scalar(5))
        with pytest.raises(InvalidPublicInputsError):
            groth16.verify(groth16_shield_setup.key_bytes, proof, _scalar(5) + _scalar(6))


class TestPairingCheck:
    """The Groth16 product equation."""

    def test_valid_proof_accepted(self, groth16_shield_setup):
        from shieldpool import groth16

        inputs = _scalar(123456789)
        proof = groth16_shield_setup.prove(inputs)
        assert groth16.verify(groth16_shield_setup.key_bytes, proof, inputs)

    def test_proof_for_other_inputs_rejected(self, groth16_shield_setup):
        from shieldpool import groth16

        proof = groth16_shield_setup.prove(_scalar(1))
        assert not groth16.verify(groth16_shield_setup.key_bytes, proof, _scalar(2))

    def test_three_input_proof(self, groth16_transfer_setup):
        from shieldpool import groth16

        inputs = _scalar(11) + _scalar(22) + _scalar(33)
        proof = groth16_transfer_setup.prove(inputs, s=9)
        assert groth16.verify(groth16_transfer_setup.key_bytes, proof, inputs)

    @pytest.mark.slow
    def test_tampered_c_rejected(self, groth16_shield_setup):
        from py_ecc import optimized_bn128 as bn128
        from shieldpool import groth16

        inputs = _scalar(77)
        proof = bytearray(groth16_shield_setup.prove(inputs))
        proof[192:256] = groth16.encode_g1(bn128.multiply(bn128.G1, 6))
        assert not groth16.verify(groth16_shield_setup.key_bytes, bytes(proof), inputs)
