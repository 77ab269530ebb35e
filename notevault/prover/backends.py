# prover/backends.py
"""
Prover capability used by the proving stages.

A backend builds the circuit witness, produces a proof and checks it
locally. The engine only relies on this contract, so a real proving
system (see prover/nargo.py) and the deterministic HashProver stand-in are
interchangeable.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from notevault.crypto_core.commitments import keccak256, to_hex
from notevault.crypto_core.merkle import MerklePath
from notevault.errors import ProofError

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class WitnessInputs:
    secret: str
    note_amount_minor: int
    amount_minor: int
    leaf_index: int
    merkle_path: MerklePath
    state_root: str
    nullifier: str
    recipient: str


@dataclass(frozen=True)
class Witness:
    public_inputs: Dict[str, str]
    private_inputs: Dict[str, Any]

    @property
    def size(self) -> int:
        """Count of private field inputs (each path sibling counts once)."""
        n = 0
        for v in self.private_inputs.values():
            n += len(v) if isinstance(v, (list, tuple)) else 1
        return n


@dataclass(frozen=True)
class ProofArtifact:
    proof_bytes: bytes
    verification_key: str
    public_inputs: Dict[str, str] = field(default_factory=dict)


def withdraw_public_inputs(nullifier: str, recipient: str, amount_minor: int, state_root: str) -> Dict[str, str]:
    return {
        "state_root": state_root.lower(),
        "nullifier": nullifier.lower(),
        "amount": hex(amount_minor),
        "recipient": recipient.lower(),
    }


def withdraw_witness(inputs: WitnessInputs) -> Witness:
    """Public/private split of the withdrawal circuit."""
    return Witness(
        public_inputs=withdraw_public_inputs(inputs.nullifier, inputs.recipient, inputs.amount_minor, inputs.state_root),
        private_inputs={
            "secret": inputs.secret,
            "balance": hex(inputs.note_amount_minor),
            "index": hex(inputs.leaf_index),
            "path": list(inputs.merkle_path.siblings),
        },
    )


class ProverBackend(ABC):
    name = "abstract"

    @abstractmethod
    async def build_witness(self, inputs: WitnessInputs) -> Witness:
        ...

    @abstractmethod
    async def prove(self, witness: Witness, progress: ProgressCallback) -> ProofArtifact:
        ...

    @abstractmethod
    async def verify(self, artifact: ProofArtifact) -> bool:
        ...

    async def close(self) -> None:
        return None


def _canonical(d: Dict[str, Any]) -> bytes:
    parts: List[str] = []
    for k in sorted(d):
        v = d[k]
        parts.append(f"{k}=" + (",".join(v) if isinstance(v, (list, tuple)) else str(v)))
    return "|".join(parts).encode("utf-8")


class HashProver(ProverBackend):
    """
    Deterministic stand-in for a proving backend.

    The proof is PROOF_CHUNKS 32-byte words: the first ones are derived from
    the private inputs, the last binds the verification key, the public
    inputs and every earlier word. verify() recomputes that last word, so a
    proof presented with different public inputs, or a tampered proof, fails.

    `fail_at` injects an exception into the given operations
    ("witness", "proving", "verifying"); `reject` makes verify() return False.
    """

    name = "hash"
    PROOF_CHUNKS = 8
    CIRCUIT_ID = b"notevault.withdraw.v1"

    def __init__(self, step_delay: float = 0.0, fail_at: Iterable[str] = (), reject: bool = False):
        self.step_delay = step_delay
        self.fail_at = set(fail_at)
        self.reject = reject
        self.verification_key = to_hex(keccak256(b"vk|" + self.CIRCUIT_ID))

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_at:
            raise ProofError(f"injected failure in {op}", op)

    async def build_witness(self, inputs: WitnessInputs) -> Witness:
        self._maybe_fail("witness")
        if inputs.amount_minor > inputs.note_amount_minor:
            raise ProofError("amount exceeds note balance", "witness")
        return withdraw_witness(inputs)

    def _binding_word(self, public_inputs: Dict[str, str], body: bytes) -> bytes:
        return keccak256(bytes.fromhex(self.verification_key[2:]) + _canonical(public_inputs) + body)

    async def prove(self, witness: Witness, progress: ProgressCallback) -> ProofArtifact:
        self._maybe_fail("proving")
        private_digest = keccak256(_canonical(witness.private_inputs))
        words: List[bytes] = []
        for i in range(self.PROOF_CHUNKS - 1):
            words.append(keccak256(private_digest + i.to_bytes(4, "big")))
            progress((i + 1) / self.PROOF_CHUNKS)
            if self.step_delay:
                await asyncio.sleep(self.step_delay)
        body = b"".join(words)
        proof = body + self._binding_word(witness.public_inputs, body)
        progress(1.0)
        return ProofArtifact(
            proof_bytes=proof,
            verification_key=self.verification_key,
            public_inputs=dict(witness.public_inputs),
        )

    async def verify(self, artifact: ProofArtifact) -> bool:
        self._maybe_fail("verifying")
        if self.reject:
            return False
        proof = artifact.proof_bytes
        if len(proof) != 32 * self.PROOF_CHUNKS or artifact.verification_key != self.verification_key:
            return False
        body, tag = proof[:-32], proof[-32:]
        return self._binding_word(artifact.public_inputs, body) == tag

    def verify_public(self, proof: bytes, public_inputs: Dict[str, str]) -> bool:
        """Synchronous check a vault can run against the inputs it was sent."""
        if len(proof) != 32 * self.PROOF_CHUNKS:
            return False
        return self._binding_word(public_inputs, proof[:-32]) == proof[-32:]


def make_backend(kind: str, **kwargs: Any) -> ProverBackend:
    kind = (kind or "hash").lower()
    if kind == "hash":
        return HashProver(**{k: v for k, v in kwargs.items() if k in ("step_delay", "fail_at", "reject")})
    if kind == "nargo":
        from notevault.prover.nargo import NargoProver

        circuits_dir: Optional[str] = kwargs.get("circuits_dir")
        if not circuits_dir:
            raise ValueError("nargo prover needs circuits_dir")
        return NargoProver(circuits_dir)
    raise ValueError(f"unknown prover backend: {kind}")


__all__ = [
    "WitnessInputs",
    "Witness",
    "ProofArtifact",
    "ProverBackend",
    "HashProver",
    "withdraw_witness",
    "withdraw_public_inputs",
    "make_backend",
]
