"""
Proof and Attestation Verification

One contract, two trust models:

    Groth16PairingVerifier  checks the proof directly with a BN254 pairing
                            product against the registered verifying key.
    AttestationVerifier     accepts a fresh Ed25519-signed statement from a
                            trusted attestor that the same proof, inputs and
                            key were checked elsewhere.

The strategy is chosen once when the pool is configured. Both reject a
revoked verifying key before looking at the proof.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

from shieldpool import groth16
from shieldpool.attestation import VerificationAttestation, check_signature, load_public_key, sha256
from shieldpool.config import VerifierConfig
from shieldpool.hardening import CryptoUtils, InvalidInputError, KeyRevokedError, VerificationFailureError
from shieldpool.keys import VerifyingKeyRecord
from shieldpool.observability import PoolLayer, get_logger, timed_operation

logger = get_logger("verifier", PoolLayer.VERIFIER)

Clock = Callable[[], float]


# =============================================================================
# VERIFIER INTERFACE
# =============================================================================

class ProofVerifier(Protocol):
    """Protocol for proof verification strategies."""

    name: str
    requires_attestation: bool

    def verify(
        self,
        proof: bytes,
        public_inputs: bytes,
        key_record: VerifyingKeyRecord,
        attestation: Optional[VerificationAttestation] = None,
    ) -> bool:
        """Return True iff the proof is accepted for the given key."""
        ...


def ensure_key_usable(key_record: VerifyingKeyRecord) -> None:
    if key_record.revoked:
        logger.warning("Verification against revoked key rejected",
                       circuit_tag=key_record.circuit_tag.hex(), version=key_record.version)
        raise KeyRevokedError(
            f"verifying key {key_record.circuit_tag.hex()}/v{key_record.version} is revoked"
        )


# =============================================================================
# DIRECT PAIRING CHECK
# =============================================================================

class Groth16PairingVerifier:
    """Verify Groth16 proofs over BN254 on the engine itself."""

    name = "groth16"
    requires_attestation = False

    @timed_operation(logger, "groth16_verify")
    def verify(
        self,
        proof: bytes,
        public_inputs: bytes,
        key_record: VerifyingKeyRecord,
        attestation: Optional[VerificationAttestation] = None,
    ) -> bool:
        ensure_key_usable(key_record)
        valid = groth16.verify(key_record.key_bytes, proof, public_inputs)
        if not valid:
            logger.info("Pairing check failed", circuit_tag=key_record.circuit_tag.hex(),
                        version=key_record.version)
        return valid


# =============================================================================
# EXTERNAL ATTESTATION
# =============================================================================

class AttestationVerifier:
    """
    Accept proofs vouched for by a trusted attestor.

    The attestation must name exactly the proof, inputs and key presented,
    carry a valid signature from the trusted key, be no older than
    ``max_age_seconds`` (and not from the future), and assert validity.
    """

    name = "attestation"
    requires_attestation = True

    def __init__(
        self,
        trusted_public_key: bytes,
        max_age_seconds: int = 300,
        clock: Clock = time.time,
    ):
        self._public_key = load_public_key(trusted_public_key)
        self.trusted_public_key = trusted_public_key
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    def verify(
        self,
        proof: bytes,
        public_inputs: bytes,
        key_record: VerifyingKeyRecord,
        attestation: Optional[VerificationAttestation] = None,
    ) -> bool:
        ensure_key_usable(key_record)
        if attestation is None:
            raise VerificationFailureError("attestation required by the configured verifier")

        checks = (
            ("proof_hash", CryptoUtils.secure_compare(sha256(proof), attestation.proof_hash)),
            ("public_inputs_hash", CryptoUtils.secure_compare(sha256(public_inputs), attestation.public_inputs_hash)),
            ("verifying_key_hash", CryptoUtils.secure_compare(key_record.key_hash, attestation.verifying_key_hash)),
        )
        for what, ok in checks:
            if not ok:
                logger.info("Attestation rejected", reason=f"{what} mismatch")
                return False

        if not check_signature(attestation, self._public_key):
            logger.warning("Attestation rejected", reason="bad signature")
            return False

        age = int(self._clock()) - attestation.timestamp
        if not 0 <= age <= self.max_age_seconds:
            logger.info("Attestation rejected", reason="stale or future timestamp", age=age)
            return False

        if not attestation.is_valid:
            logger.info("Attestation rejected", reason="attestor reported invalid proof")
            return False

        return True


def build_verifier(config: Optional[VerifierConfig] = None, clock: Clock = time.time) -> ProofVerifier:
    """Instantiate the strategy named by ``verifier.strategy``."""
    config = config or VerifierConfig()
    strategy = config.strategy.get()
    if strategy == "groth16":
        return Groth16PairingVerifier()
    if strategy == "attestation":
        signer = config.trusted_signer_public_key.get()
        if not signer:
            raise InvalidInputError("verifier.trusted_signer_public_key is required for attestation strategy")
        return AttestationVerifier(
            bytes.fromhex(signer),
            max_age_seconds=config.attestation_max_age_seconds.get(),
            clock=clock,
        )
    raise InvalidInputError(f"unknown verifier strategy: {strategy}")
