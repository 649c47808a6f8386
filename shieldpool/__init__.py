"""
SHIELDPOOL: Shielded-Value Pool Engine

Users deposit value as hidden commitments, move it between commitments and
withdraw it to public recipients. Every operation carries a zero-knowledge
proof and spends a one-time nullifier; the pool only ever learns
commitments, nullifiers and Merkle roots.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        SHIELDED POOL ENGINE                             │
    │                                                                         │
    │  LAYER 3: ORCHESTRATION                                                 │
    │    pool.py          Shared state behind one lock, atomic apply          │
    │    vault.py         Per-owner operation state machine                   │
    │    records.py       Discriminated binary records, atomic store          │
    │    cli.py           Attestor and operator tooling                       │
    │                                                                         │
    │  LAYER 2: VERIFICATION                                                  │
    │    groth16.py       BN254 point codecs and the pairing check            │
    │    attestation.py   Ed25519-signed off-line verification results        │
    │    verifier.py      Pluggable verification strategies                   │
    │    keys.py          Versioned verifying-key registry                    │
    │                                                                         │
    │  LAYER 1: SHARED STATE                                                  │
    │    accumulator.py   Append-only incremental Merkle tree                 │
    │    nullifiers.py    Spent-nullifier set                                 │
    │    ledger.py        Root history, rate limits, counters                 │
    │    allowances.py    Delegated spending allowances for transfer_from     │
    │    operations.py    Operation kinds, fields, ids and payloads           │
    │    custody.py       Custodial value movement                            │
    │                                                                         │
    │  AMBIENT                                                                │
    │    hardening.py     Error taxonomy, validators, checked arithmetic      │
    │    config.py        Layered YAML/env configuration                      │
    │    observability.py Structured JSON logging, correlation ids            │
    │    audit.py         Hash-chained audit trail                            │
    │                                                                         │
    └─────────────────────────────────────────────────────────────────────────┘

Operation Lifecycle
───────────────────

    prepare -> attach_payload -> verify -> apply -> finalize

    PENDING ──verify──▶ VERIFIED ──apply──▶ UPDATED ──finalize──▶ COMPLETED
       │                   │
       └────── fail ───────┴──▶ FAILED

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


# Lazy imports keep ``from shieldpool import __version__`` cheap for the CLI
def __getattr__(name):
    """Lazy import shieldpool modules on first access."""

    # Pool exports
    if name in ("ShieldedPool", "ApplyResult"):
        from shieldpool import pool
        return getattr(pool, name)

    # Vault exports
    if name == "OperationVault":
        from shieldpool import vault
        return vault.OperationVault

    # Operation exports
    if name in ("OperationKind", "OperationStatus", "OperationFields",
                "OperationPayload", "PreparedOperation", "operation_id",
                "expected_public_inputs"):
        from shieldpool import operations
        return getattr(operations, name)

    # Accumulator exports
    if name in ("CommitmentTree", "compute_root", "authentication_path",
                "verify_path", "sha256_pair", "empty_root"):
        from shieldpool import accumulator
        return getattr(accumulator, name)

    # Nullifier exports
    if name == "NullifierSet":
        from shieldpool import nullifiers
        return nullifiers.NullifierSet

    # Verification exports
    if name in ("ProofVerifier", "Groth16PairingVerifier", "AttestationVerifier",
                "build_verifier"):
        from shieldpool import verifier
        return getattr(verifier, name)

    if name in ("VerificationAttestation", "AttestationSigner"):
        from shieldpool import attestation
        return getattr(attestation, name)

    if name in ("KeyRegistry", "VerifyingKeyRecord"):
        from shieldpool import keys
        return getattr(keys, name)
    # Allowance exports
    if name in ("Allowance", "AllowanceRegistry"):
        from shieldpool import allowances
        return getattr(allowances, name)

    # Hardening exports
    if name in ("ErrorKind", "ShieldedPoolError", "NotFoundError", "InvalidInputError",
                "UnauthorizedError", "StateConflictError", "VerificationFailureError",
                "ResourceExhaustedError", "ArithmeticOverflowError", "PoolHaltedError"):
        from shieldpool import hardening
        return getattr(hardening, name)

    # Config exports
    if name in ("ShieldPoolConfig", "ConfigManager", "get_config"):
        from shieldpool import config
        return getattr(config, name)

    raise AttributeError(f"module 'shieldpool' has no attribute '{name}'")


__all__ = [
    # Version info
    "__version__",
    # Pool
    "ShieldedPool",
    "ApplyResult",
    "OperationVault",
    # Operations
    "OperationKind",
    "OperationStatus",
    "OperationFields",
    "OperationPayload",
    "PreparedOperation",
    "operation_id",
    "expected_public_inputs",
    # Accumulator
    "CommitmentTree",
    "compute_root",
    "authentication_path",
    "verify_path",
    "sha256_pair",
    "empty_root",
    "NullifierSet",
    # Verification
    "ProofVerifier",
    "Groth16PairingVerifier",
    "AttestationVerifier",
    "build_verifier",
    "VerificationAttestation",
    "AttestationSigner",
    "KeyRegistry",
    "VerifyingKeyRecord",
    # Allowances
    "Allowance",
    "AllowanceRegistry",
    # Errors
    "ErrorKind",
    "ShieldedPoolError",
    "NotFoundError",
    "InvalidInputError",
    "UnauthorizedError",
    "StateConflictError",
    "VerificationFailureError",
    "ResourceExhaustedError",
    "ArithmeticOverflowError",
    "PoolHaltedError",
    # Config
    "ShieldPoolConfig",
    "ConfigManager",
    "get_config",
]
