"""Groth16 proof and verifying-key codecs with BN254 pairing verification.

Byte layouts (all coordinates 32-byte big-endian, all-zero point = infinity):

    G1:    x || y                                   (64 bytes)
    G2:    x.c0 || x.c1 || y.c0 || y.c1             (128 bytes)
    proof: A (G1) || B (G2) || C (G1)               (256 bytes)
    key:   alpha (G1) || beta (G2) || gamma (G2) || delta (G2)
           || count (u32 little-endian) || gamma_abc[count] (G1 each)

Verification evaluates

    e(-A, B) * e(alpha, beta) * e(vk_x, gamma) * e(C, delta) == 1
    vk_x = gamma_abc[0] + sum(x_i * gamma_abc[i + 1])

with the pairing arithmetic supplied by ``py_ecc.optimized_bn128``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Type

from py_ecc import optimized_bn128 as bn128

from shieldpool.hardening import (
    FIELD_BYTES,
    InvalidInputError,
    InvalidProofError,
    InvalidPublicInputsError,
    InvalidVerifyingKeyError,
)

G1_SIZE = 64
G2_SIZE = 128
PROOF_SIZE = G1_SIZE + G2_SIZE + G1_SIZE
KEY_HEADER_SIZE = G1_SIZE + 3 * G2_SIZE + 4

FIELD_MODULUS = bn128.field_modulus
CURVE_ORDER = bn128.curve_order

# Jacobian-style triples as used by py_ecc's optimized curve
G1Point = Tuple[bn128.FQ, bn128.FQ, bn128.FQ]
G2Point = Tuple[bn128.FQ2, bn128.FQ2, bn128.FQ2]


def _coord(data: bytes, offset: int, error_cls: Type[InvalidInputError], what: str) -> int:
    value = int.from_bytes(data[offset:offset + FIELD_BYTES], "big")
    if value >= FIELD_MODULUS:
        raise error_cls(f"{what}: coordinate not reduced modulo the base field")
    return value


def _as_int(c) -> int:
    return c if isinstance(c, int) else c.n


def decode_g1(data: bytes, error_cls: Type[InvalidInputError] = InvalidProofError, what: str = "G1") -> G1Point:
    if len(data) != G1_SIZE:
        raise error_cls(f"{what}: expected {G1_SIZE} bytes, got {len(data)}")
    if not any(data):
        return bn128.Z1
    x = _coord(data, 0, error_cls, what)
    y = _coord(data, 32, error_cls, what)
    point = (bn128.FQ(x), bn128.FQ(y), bn128.FQ.one())
    if not bn128.is_on_curve(point, bn128.b):
        raise error_cls(f"{what}: point not on curve")
    return point


def decode_g2(
    data: bytes,
    error_cls: Type[InvalidInputError] = InvalidProofError,
    what: str = "G2",
    check_subgroup: bool = True,
) -> G2Point:
    if len(data) != G2_SIZE:
        raise error_cls(f"{what}: expected {G2_SIZE} bytes, got {len(data)}")
    if not any(data):
        return bn128.Z2
    x0, x1, y0, y1 = (_coord(data, i * 32, error_cls, what) for i in range(4))
    point = (bn128.FQ2([x0, x1]), bn128.FQ2([y0, y1]), bn128.FQ2.one())
    if not bn128.is_on_curve(point, bn128.b2):
        raise error_cls(f"{what}: point not on curve")
    # G2 has a cofactor; reject points outside the prime-order subgroup
    if check_subgroup and not bn128.is_inf(bn128.multiply(point, CURVE_ORDER)):
        raise error_cls(f"{what}: point not in the prime-order subgroup")
    return point


def encode_g1(point: G1Point) -> bytes:
    if bn128.is_inf(point):
        return bytes(G1_SIZE)
    x, y = bn128.normalize(point)
    return _as_int(x).to_bytes(32, "big") + _as_int(y).to_bytes(32, "big")


def encode_g2(point: G2Point) -> bytes:
    if bn128.is_inf(point):
        return bytes(G2_SIZE)
    x, y = bn128.normalize(point)
    return b"".join(_as_int(c).to_bytes(32, "big") for c in (*x.coeffs, *y.coeffs))


@dataclass(frozen=True)
class Proof:
    a: G1Point
    b: G2Point
    c: G1Point

    @classmethod
    def from_bytes(cls, data: bytes) -> "Proof":
        if len(data) != PROOF_SIZE:
            raise InvalidProofError(f"proof must be {PROOF_SIZE} bytes, got {len(data)}")
        return cls(
            a=decode_g1(data[0:64], InvalidProofError, "proof.a"),
            b=decode_g2(data[64:192], InvalidProofError, "proof.b"),
            c=decode_g1(data[192:256], InvalidProofError, "proof.c"),
        )

    def to_bytes(self) -> bytes:
        return encode_g1(self.a) + encode_g2(self.b) + encode_g1(self.c)


@dataclass(frozen=True)
class VerifyingKey:
    alpha: G1Point
    beta: G2Point
    gamma: G2Point
    delta: G2Point
    gamma_abc: Tuple[G1Point, ...]

    @property
    def num_public_inputs(self) -> int:
        return len(self.gamma_abc) - 1

    @classmethod
    def from_bytes(cls, data: bytes) -> "VerifyingKey":
        count = key_layout_count(data)
        err = InvalidVerifyingKeyError
        gamma_abc = tuple(
            decode_g1(data[KEY_HEADER_SIZE + i * G1_SIZE:KEY_HEADER_SIZE + (i + 1) * G1_SIZE], err, f"vk.gamma_abc[{i}]")
            for i in range(count)
        )
        return cls(
            alpha=decode_g1(data[0:64], err, "vk.alpha"),
            beta=decode_g2(data[64:192], err, "vk.beta"),
            gamma=decode_g2(data[192:320], err, "vk.gamma"),
            delta=decode_g2(data[320:448], err, "vk.delta"),
            gamma_abc=gamma_abc,
        )

    def to_bytes(self) -> bytes:
        return (
            encode_g1(self.alpha)
            + encode_g2(self.beta)
            + encode_g2(self.gamma)
            + encode_g2(self.delta)
            + struct.pack("<I", len(self.gamma_abc))
            + b"".join(encode_g1(p) for p in self.gamma_abc)
        )

    def digest(self) -> bytes:
        return hashlib.sha256(self.to_bytes()).digest()


def key_layout_count(data: bytes) -> int:
    """Check the verifying-key byte layout and return the gamma_abc count."""
    if len(data) < KEY_HEADER_SIZE + G1_SIZE:
        raise InvalidVerifyingKeyError(f"verifying key too short ({len(data)} bytes)")
    (count,) = struct.unpack_from("<I", data, KEY_HEADER_SIZE - 4)
    if count < 1:
        raise InvalidVerifyingKeyError("verifying key has no gamma_abc points")
    expected = KEY_HEADER_SIZE + count * G1_SIZE
    if len(data) != expected:
        raise InvalidVerifyingKeyError(f"verifying key must be {expected} bytes for {count} points, got {len(data)}")
    return count


def split_public_inputs(data: bytes) -> List[int]:
    """Split concatenated 32-byte big-endian scalars."""
    if not data or len(data) % FIELD_BYTES:
        raise InvalidPublicInputsError(f"public inputs must be a non-empty multiple of {FIELD_BYTES} bytes")
    values = [int.from_bytes(data[i:i + FIELD_BYTES], "big") for i in range(0, len(data), FIELD_BYTES)]
    for i, v in enumerate(values):
        if v >= CURVE_ORDER:
            raise InvalidPublicInputsError(f"public input {i} not reduced modulo the scalar field")
    return values


def public_combination(vk: VerifyingKey, inputs: Sequence[int]) -> G1Point:
    if len(inputs) != vk.num_public_inputs:
        raise InvalidPublicInputsError(
            f"verifying key expects {vk.num_public_inputs} public inputs, got {len(inputs)}"
        )
    acc = vk.gamma_abc[0]
    for x, point in zip(inputs, vk.gamma_abc[1:]):
        if x:
            acc = bn128.add(acc, bn128.multiply(point, x))
    return acc


def verify_proof(vk: VerifyingKey, proof: Proof, inputs: Sequence[int]) -> bool:
    """Evaluate the Groth16 pairing product."""
    vk_x = public_combination(vk, inputs)
    pairs = (
        (proof.b, bn128.neg(proof.a)),
        (vk.beta, vk.alpha),
        (vk.gamma, vk_x),
        (vk.delta, proof.c),
    )
    acc = bn128.FQ12.one()
    for g2, g1 in pairs:
        acc = acc * bn128.pairing(g2, g1, final_exponentiate=False)
    return bn128.final_exponentiate(acc) == bn128.FQ12.one()


def verify(key_bytes: bytes, proof_bytes: bytes, public_inputs: bytes) -> bool:
    """Decode all three encodings and run the pairing check."""
    proof = Proof.from_bytes(proof_bytes)
    vk = VerifyingKey.from_bytes(key_bytes)
    inputs = split_public_inputs(public_inputs)
    return verify_proof(vk, proof, inputs)
