import hashlib
import os
import pathlib
import struct
import sys
from typing import Any, Dict, List, Optional

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import shieldpool`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless SHIELDPOOL_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    run_slow = _env_flag('SHIELDPOOL_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set SHIELDPOOL_RUN_SLOW=1 to enable'))


# =============================================================================
# Shared constants
# =============================================================================

AUTHORITY = bytes(range(32))
CIRCUIT_TAG = hashlib.sha256(b"shieldpool-test-circuit").digest()

# Structurally valid key bytes (three gamma_abc points at infinity); only
# the attestation strategy accepts it since it never decodes the points.
LAYOUT_KEY = bytes(448) + struct.pack("<I", 3) + bytes(64 * 3)

# Opaque 256-byte proof for attestation-backed operations
OPAQUE_PROOF = hashlib.sha256(b"proof").digest() * 8

START_TIME = 1_700_000_000.0


# =============================================================================
# Clock
# =============================================================================

class ManualClock:
    """Deterministic clock for rate limits and attestation freshness."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Simulated Groth16 setup
# =============================================================================

class SimulatedGroth16:
    """
    Trapdoor Groth16 setup over BN254.

    Knowing the discrete logs of every key element lets the test forge a
    proof for any public input vector:

        A = (a*b + L*c + s*d) * G1,  B = G2,  C = s * G1
        L = k0 + sum(x_i * k_{i+1})

    which satisfies e(-A, B) * e(alpha, beta) * e(vk_x, gamma) * e(C, delta) == 1.
    """

    def __init__(self, num_inputs: int, seed: int = 0):
        from py_ecc import optimized_bn128 as bn128
        from shieldpool.groth16 import VerifyingKey

        self.bn128 = bn128
        r = bn128.curve_order
        self.a, self.b, self.c, self.d = ((seed + v) % r for v in (11, 13, 17, 19))
        self.k = [(seed + 23 + 2 * i) % r for i in range(num_inputs + 1)]
        self.vk = VerifyingKey(
            alpha=bn128.multiply(bn128.G1, self.a),
            beta=bn128.multiply(bn128.G2, self.b),
            gamma=bn128.multiply(bn128.G2, self.c),
            delta=bn128.multiply(bn128.G2, self.d),
            gamma_abc=tuple(bn128.multiply(bn128.G1, k) for k in self.k),
        )
        self.key_bytes = self.vk.to_bytes()

    def prove(self, public_inputs: bytes, s: int = 5) -> bytes:
        from shieldpool.groth16 import Proof, split_public_inputs

        bn128 = self.bn128
        r = bn128.curve_order
        xs = split_public_inputs(public_inputs)
        lin = (self.k[0] + sum(x * k for x, k in zip(xs, self.k[1:]))) % r
        a_scalar = (self.a * self.b + lin * self.c + s * self.d) % r
        proof = Proof(
            a=bn128.multiply(bn128.G1, a_scalar),
            b=bn128.G2,
            c=bn128.multiply(bn128.G1, s),
        )
        return proof.to_bytes()


@pytest.fixture(scope="session")
def groth16_shield_setup() -> SimulatedGroth16:
    """One public input: the shield layout."""
    return SimulatedGroth16(num_inputs=1)


@pytest.fixture(scope="session")
def groth16_transfer_setup() -> SimulatedGroth16:
    """Three public inputs: the transfer layout."""
    return SimulatedGroth16(num_inputs=3, seed=100)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from default configuration."""
    from shieldpool.config import ConfigManager

    mgr = ConfigManager()
    mgr.reset()
    yield mgr
    mgr.reset()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def signer():
    from shieldpool.attestation import AttestationSigner
    return AttestationSigner.from_private_bytes(hashlib.sha256(b"attestor").digest())


def make_config(depth: int = 8, settings: Optional[Dict[str, Any]] = None):
    """Pool configuration with a small tree and no rate limiting."""
    from shieldpool.config import ShieldPoolConfig

    config = ShieldPoolConfig()
    config.accumulator.depth.set(depth)
    config.ledger.shield_min_interval_seconds.set(0.0)
    config.ledger.unshield_min_interval_seconds.set(0.0)
    config.ledger.transfer_min_interval_seconds.set(0.0)
    for path, value in (settings or {}).items():
        section, name = path.split(".")
        getattr(getattr(config, section), name).set(value)
    return config


class PoolHarness:
    """Drives operations through an attestation-verified pool."""

    def __init__(self, pool, signer, clock):
        self.pool = pool
        self.signer = signer
        self.clock = clock

    def attach(
        self,
        owner: str,
        op_id: bytes,
        proof: bytes = OPAQUE_PROOF,
        public_inputs: Optional[bytes] = None,
        is_valid: bool = True,
        timestamp: Optional[int] = None,
        attest: bool = True,
    ) -> None:
        from shieldpool.operations import expected_public_inputs

        vault = self.pool.vault(owner)
        op = vault.get(op_id)
        if public_inputs is None:
            public_inputs = expected_public_inputs(op.kind, op.fields)
        attestation = None
        if attest:
            key_bytes = self.pool.active_key_record().key_bytes
            attestation = self.signer.attest(
                proof, public_inputs, key_bytes,
                is_valid=is_valid,
                timestamp=int(self.clock()) if timestamp is None else timestamp,
            )
        vault.attach_payload(op_id, proof, public_inputs, attestation)

    def submit(self, owner: str, kind: str, amount: int, /, **fields: bytes) -> bytes:
        """prepare + attach an attested payload."""
        op_id = self.pool.vault(owner).prepare(kind, amount, **fields)
        self.attach(owner, op_id)
        return op_id

    def verified(self, owner: str, kind: str, amount: int, /, **fields: bytes) -> bytes:
        op_id = self.submit(owner, kind, amount, **fields)
        self.pool.vault(owner).verify(op_id)
        return op_id

    def run(self, owner: str, kind: str, amount: int, /, **fields: bytes):
        """Drive an operation to completion; returns its ApplyResult."""
        vault = self.pool.vault(owner)
        op_id = self.verified(owner, kind, amount, **fields)
        result = vault.apply(op_id)
        vault.finalize(op_id)
        return result

    def shield(self, owner: str, amount: int, commitment: bytes):
        return self.run(owner, "shield", amount, commitment=commitment)


@pytest.fixture
def make_pool(clock, signer):
    """Factory for attestation-verified pools with a registered key."""
    def factory(depth: int = 8, settings: Optional[Dict[str, Any]] = None, key_bytes: bytes = LAYOUT_KEY):
        from shieldpool.pool import ShieldedPool
        from shieldpool.verifier import AttestationVerifier

        pool = ShieldedPool(
            AUTHORITY,
            verifier=AttestationVerifier(signer.public_key_bytes, max_age_seconds=300, clock=clock),
            config=make_config(depth, settings),
            clock=clock,
        )
        pool.register_key(CIRCUIT_TAG, 1, key_bytes, AUTHORITY)
        return pool
    return factory


@pytest.fixture
def pool(make_pool):
    return make_pool()


@pytest.fixture
def harness(pool, signer, clock) -> PoolHarness:
    return PoolHarness(pool, signer, clock)


@pytest.fixture
def make_harness(signer, clock):
    """Wrap an arbitrary pool in a PoolHarness."""
    def factory(pool) -> PoolHarness:
        return PoolHarness(pool, signer, clock)
    return factory


@pytest.fixture
def pool_config():
    """Default test configuration: depth 8, no rate limiting."""
    return make_config()
