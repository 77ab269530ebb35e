# prover/nargo.py
"""
Noir / Barretenberg proving backend.

Shells out to the `nargo` and `bb` CLIs against a compiled withdrawal
circuit:

    witness  : write Prover.toml, `nargo execute` -> witness.gz
    proving  : `bb prove -b <circuit.json> -w witness.gz -o proof`
    verifying: `bb verify -b <circuit.json> -k vk -p proof`

Commands run once; a failing command is a ProofError for the stage that
ran it.
"""
from __future__ import annotations

import asyncio
import shlex
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from notevault.errors import ProofError
from notevault.logging_config import get_logger
from notevault.prover.backends import (
    ProgressCallback,
    ProofArtifact,
    ProverBackend,
    Witness,
    WitnessInputs,
    withdraw_witness,
)

logger = get_logger("prover.nargo")

DEFAULT_CIRCUIT = "notevault_circuits"


def _run_rc(cmd: List[str], cwd: Optional[Path] = None, timeout: Optional[float] = None) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout, check=False)
    except FileNotFoundError as e:
        return 127, "", f"{cmd[0]} not found: {e}"
    except subprocess.TimeoutExpired:
        return 124, "", f"timed out after {timeout}s"
    return p.returncode, (p.stdout or ""), (p.stderr or "")


def stderr_to_summary(stderr: str) -> str:
    if not stderr:
        return ""
    lines = [l.strip() for l in stderr.splitlines() if l.strip()]
    return lines[-1] if lines else stderr


def witness_to_toml(witness: Witness) -> str:
    """Prover.toml body: every input as a quoted string, paths as arrays."""
    lines: List[str] = []
    for k, v in list(witness.public_inputs.items()) + list(witness.private_inputs.items()):
        if isinstance(v, (list, tuple)):
            lines.append(f"{k} = [" + ", ".join(f'"{x}"' for x in v) + "]")
        else:
            lines.append(f'{k} = "{v}"')
    return "\n".join(lines) + "\n"


class NargoProver(ProverBackend):
    name = "nargo"

    def __init__(
        self,
        circuits_dir: str | Path,
        circuit_name: str = DEFAULT_CIRCUIT,
        nargo_bin: str = "nargo",
        bb_bin: str = "bb",
        timeout: float = 600.0,
    ):
        self.circuits_dir = Path(circuits_dir)
        self.target_dir = self.circuits_dir / "target"
        self.work_dir = self.circuits_dir / "work"
        self.circuit_name = circuit_name
        self.nargo_bin = nargo_bin
        self.bb_bin = bb_bin
        self.timeout = timeout

    @property
    def circuit_path(self) -> Path:
        return self.target_dir / f"{self.circuit_name}.json"

    @property
    def vk_path(self) -> Path:
        return self.target_dir / "vk"

    def is_compiled(self) -> bool:
        return self.circuit_path.exists()

    async def _run(self, cmd: List[str], stage: str) -> str:
        printable = " ".join(shlex.quote(c) for c in cmd)
        logger.debug(f"$ {printable}")
        rc, out, err = await asyncio.to_thread(_run_rc, cmd, self.circuits_dir, self.timeout)
        if rc != 0:
            raise ProofError(f"command failed (rc={rc}): {printable}: {stderr_to_summary(err)}", stage)
        return out.strip()

    def _require_compiled(self, stage: str) -> None:
        if not self.is_compiled():
            raise ProofError(
                f"circuit not compiled ({self.circuit_path} missing); run `nargo compile` in {self.circuits_dir}",
                stage,
            )

    async def build_witness(self, inputs: WitnessInputs) -> Witness:
        self._require_compiled("witness")
        witness = withdraw_witness(inputs)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        prover_toml = self.work_dir / "Prover.toml"
        prover_toml.write_text(witness_to_toml(witness), encoding="utf-8")
        await self._run(
            [
                self.nargo_bin,
                "execute",
                "--prover-toml",
                str(prover_toml),
                "--witness-path",
                str(self.work_dir / "witness.gz"),
            ],
            "witness",
        )
        return witness

    async def _verification_key(self) -> str:
        if not self.vk_path.exists():
            logger.info("Generating verification key...")
            await self._run(
                [self.bb_bin, "write_vk", "-b", str(self.circuit_path), "-o", str(self.vk_path), "--oracle_hash", "keccak"],
                "proving",
            )
        return "0x" + self.vk_path.read_bytes().hex()

    async def prove(self, witness: Witness, progress: ProgressCallback) -> ProofArtifact:
        self._require_compiled("proving")
        proof_path = self.work_dir / "proof"
        await self._run(
            [
                self.bb_bin,
                "prove",
                "-b",
                str(self.circuit_path),
                "-w",
                str(self.work_dir / "witness.gz"),
                "-o",
                str(proof_path),
            ],
            "proving",
        )
        proof = proof_path.read_bytes()
        progress(1.0)
        logger.info(f"Proof generated ({len(proof)} bytes)")
        return ProofArtifact(
            proof_bytes=proof,
            verification_key=await self._verification_key(),
            public_inputs=dict(witness.public_inputs),
        )

    async def verify(self, artifact: ProofArtifact) -> bool:
        self._require_compiled("verifying")
        self.work_dir.mkdir(parents=True, exist_ok=True)
        to_verify = self.work_dir / "proof_to_verify"
        to_verify.write_bytes(artifact.proof_bytes)
        cmd = [self.bb_bin, "verify", "-b", str(self.circuit_path), "-k", str(self.vk_path), "-p", str(to_verify)]
        rc, _out, err = await asyncio.to_thread(_run_rc, cmd, self.circuits_dir, self.timeout)
        if rc != 0:
            logger.warning(f"bb verify rejected proof: {stderr_to_summary(err)}")
        return rc == 0


__all__ = ["NargoProver", "witness_to_toml"]
