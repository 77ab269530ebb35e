# chain/client.py
"""
Chain client capability and an in-process vault implementing it.

The core only talks to the chain through ChainClient. LocalVault applies
the vault contract's rules locally (minimum deposit, commitment tree, root
history, nullifier set) so the whole deposit -> prove -> withdraw flow runs
without a node; it backs the CLI and the tests.
"""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from typing import Callable, Deque, Dict, List, Optional

from notevault.crypto_core.commitments import hex32_to_bytes, is_address, keccak256, to_hex, uint256_bytes
from notevault.crypto_core.merkle import DEFAULT_DEPTH, MerklePath, MerkleTree, MerkleTreeFull
from notevault.database.store import LedgerStore
from notevault.errors import StorageError, SubmissionError
from notevault.logging_config import get_logger, short

logger = get_logger("chain")

TX_CONFIRMED = "confirmed"
TX_REVERTED = "reverted"


@dataclass(frozen=True)
class TxReceipt:
    tx_ref: str
    status: str
    block: int
    kind: str = ""
    leaf_index: Optional[int] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status == TX_CONFIRMED


@dataclass(frozen=True)
class DepositEvent:
    commitment: str
    amount: int
    leaf_index: int
    block: int
    tx_ref: str
    timestamp: int = 0


DepositCallback = Callable[[DepositEvent], None]


class ChainClient(ABC):
    """What the core needs from the chain. Wallet signing, RPC and event
    subscription live behind it."""

    @abstractmethod
    async def submit_deposit(self, commitment: str, value: int) -> str:
        ...

    @abstractmethod
    async def submit_withdrawal(self, nullifier: str, recipient: str, amount: int, state_root: str, proof: bytes) -> str:
        ...

    @abstractmethod
    async def read_state_root(self) -> str:
        ...

    @abstractmethod
    async def read_merkle_path(self, leaf_index: int) -> MerklePath:
        ...

    async def is_accepted_root(self, root: str) -> bool:
        """Whether a withdrawal proven against `root` would pass the root check.
        Clients whose vault keeps a root history override this."""
        return root.lower() == (await self.read_state_root()).lower()

    @abstractmethod
    async def wait_for_receipt(self, tx_ref: str, timeout: float = 60.0) -> TxReceipt:
        ...

    @abstractmethod
    def on_deposit_event(self, callback: DepositCallback) -> Callable[[], None]:
        ...


ProofVerifier = Callable[[bytes, Dict[str, str]], bool]


class LocalVault(ChainClient):
    def __init__(
        self,
        depth: int = DEFAULT_DEPTH,
        min_deposit: int = 1,
        root_history: int = 30,
        verifier: Optional[ProofVerifier] = None,
        state_path: Optional[str] = None,
        auto_mine: bool = True,
        poll_interval: float = 0.01,
    ):
        self.depth = depth
        self.min_deposit = min_deposit
        self.root_history = root_history
        self.verifier = verifier
        self.auto_mine = auto_mine
        self.poll_interval = poll_interval
        self.store = LedgerStore(state_path) if state_path else None

        self._mempool: List[tuple] = []
        self._listeners: List[DepositCallback] = []
        self._reset_state()
        self._fail_next: Optional[str] = None
        self._revert_next: Optional[str] = None

        if self.store is not None:
            self._load()

    # ===== persistence =====

    def _reset_state(self) -> None:
        self.tree = MerkleTree(self.depth)
        self.roots: Deque[str] = deque([self.tree.root()], maxlen=self.root_history)
        self.nullifiers: set = set()
        self.commitments: set = set()
        self.block = 0
        self.tvl = 0
        self.receipts: Dict[str, TxReceipt] = {}
        self.deposit_log: List[DepositEvent] = []
        self._nonce = 0

    def _load(self) -> None:
        try:
            raw = self.store.read()
        except StorageError as e:
            logger.error(f"Vault state unreadable, starting fresh: {e}")
            return
        if not raw:
            return
        try:
            self.tree = MerkleTree.from_leaves(raw.get("leaves", []), self.depth)
            self.roots = deque(raw.get("roots") or [self.tree.root()], maxlen=self.root_history)
            self.nullifiers = set(raw.get("nullifiers", []))
            self.commitments = set(self.tree.leaves())
            self.block = int(raw.get("block", 0))
            self.tvl = int(raw.get("tvl", "0"))
            self._nonce = int(raw.get("nonce", 0))
            self.receipts = {k: TxReceipt(**v) for k, v in (raw.get("receipts") or {}).items()}
            self.deposit_log = [DepositEvent(**e) for e in raw.get("deposits", [])]
        except (TypeError, ValueError, KeyError) as e:
            logger.error(f"Vault state malformed, starting fresh: {e}")
            self._reset_state()

    def _save(self) -> None:
        if self.store is None:
            return
        self.store.write(
            {
                "leaves": self.tree.leaves(),
                "roots": list(self.roots),
                "nullifiers": sorted(self.nullifiers),
                "block": self.block,
                "tvl": str(self.tvl),
                "nonce": self._nonce,
                "receipts": {k: asdict(v) for k, v in self.receipts.items()},
                "deposits": [asdict(e) for e in self.deposit_log],
            }
        )

    # ===== test / ops hooks =====

    def fail_next_withdrawal(self, reason: str = "rpc unavailable") -> None:
        """Next submit_withdrawal raises before anything reaches the chain."""
        self._fail_next = reason

    def revert_next_withdrawal(self, reason: str = "execution reverted") -> None:
        """Next withdrawal is mined but reverts."""
        self._revert_next = reason

    # ===== reads =====

    async def read_state_root(self) -> str:
        return self.tree.root()

    async def read_merkle_path(self, leaf_index: int) -> MerklePath:
        return self.tree.proof(leaf_index)

    def is_known_root(self, root: str) -> bool:
        r = root.lower()
        return any(r == x.lower() for x in self.roots)

    async def is_accepted_root(self, root: str) -> bool:
        return self.is_known_root(root)

    def is_nullifier_used(self, nullifier: str) -> bool:
        return nullifier.lower() in self.nullifiers

    def deposit_events(self, from_block: int = 0) -> List[DepositEvent]:
        return [e for e in self.deposit_log if e.block > from_block]

    # ===== events =====

    def on_deposit_event(self, callback: DepositCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _emit_deposit(self, event: DepositEvent) -> None:
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception as e:
                logger.error(f"Deposit listener failed: {e}", exc_info=True)

    # ===== writes =====

    def _tx_ref(self, kind: str, payload: bytes) -> str:
        self._nonce += 1
        return to_hex(keccak256(kind.encode() + self._nonce.to_bytes(8, "big") + payload))

    async def submit_deposit(self, commitment: str, value: int) -> str:
        hex32_to_bytes(commitment, "commitment")
        tx_ref = self._tx_ref("deposit", bytes.fromhex(commitment[2:]) + uint256_bytes(value, "value"))
        self._mempool.append(("deposit", tx_ref, commitment.lower(), int(value)))
        logger.info(f"Deposit submitted: tx {short(tx_ref)} commitment {short(commitment)}")
        if self.auto_mine:
            await self.mine()
        return tx_ref

    async def submit_withdrawal(self, nullifier: str, recipient: str, amount: int, state_root: str, proof: bytes) -> str:
        if self._fail_next is not None:
            reason, self._fail_next = self._fail_next, None
            raise SubmissionError(f"withdrawal submission failed: {reason}")
        if not is_address(recipient):
            raise SubmissionError("invalid recipient address")
        tx_ref = self._tx_ref("withdraw", bytes.fromhex(nullifier[2:]) + bytes(proof))
        self._mempool.append(("withdraw", tx_ref, nullifier.lower(), recipient.lower(), int(amount), state_root.lower(), bytes(proof)))
        logger.info(f"Withdrawal submitted: tx {short(tx_ref)} nullifier {short(nullifier)}")
        if self.auto_mine:
            await self.mine()
        return tx_ref

    async def mine(self) -> int:
        """Include every queued transaction in a new block each. Returns count."""
        loop = asyncio.get_running_loop()
        mined = 0
        while self._mempool:
            tx = self._mempool.pop(0)
            self.block += 1
            if tx[0] == "deposit":
                receipt, event = self._apply_deposit(*tx[1:])
                if event is not None:
                    # listeners see the event after the submitter got its tx ref back
                    loop.call_soon(self._emit_deposit, event)
            else:
                receipt = self._apply_withdrawal(*tx[1:])
            self.receipts[receipt.tx_ref] = receipt
            mined += 1
        if mined:
            self._save()
        return mined

    def _apply_deposit(self, tx_ref: str, commitment: str, value: int):
        if value < self.min_deposit:
            return TxReceipt(tx_ref, TX_REVERTED, self.block, "deposit", reason="deposit below minimum"), None
        if commitment in self.commitments:
            return TxReceipt(tx_ref, TX_REVERTED, self.block, "deposit", reason="commitment already exists"), None
        try:
            index = self.tree.insert(commitment)
        except MerkleTreeFull:
            return TxReceipt(tx_ref, TX_REVERTED, self.block, "deposit", reason="tree full"), None
        self.commitments.add(commitment)
        self.roots.append(self.tree.root())
        self.tvl += value
        event = DepositEvent(commitment, value, index, self.block, tx_ref, int(time.time()))
        self.deposit_log.append(event)
        return TxReceipt(tx_ref, TX_CONFIRMED, self.block, "deposit", leaf_index=index), event

    def _apply_withdrawal(self, tx_ref: str, nullifier: str, recipient: str, amount: int, state_root: str, proof: bytes) -> TxReceipt:
        def _revert(reason: str) -> TxReceipt:
            logger.warning(f"Withdrawal {short(tx_ref)} reverted: {reason}")
            return TxReceipt(tx_ref, TX_REVERTED, self.block, "withdraw", reason=reason)

        if self._revert_next is not None:
            reason, self._revert_next = self._revert_next, None
            return _revert(reason)
        if nullifier in self.nullifiers:
            return _revert("nullifier already used")
        if not self.is_known_root(state_root):
            return _revert("unknown state root")
        if amount <= 0 or amount > self.tvl:
            return _revert("invalid amount")
        if not proof:
            return _revert("empty proof")
        if self.verifier is not None:
            from notevault.prover.backends import withdraw_public_inputs

            if not self.verifier(proof, withdraw_public_inputs(nullifier, recipient, amount, state_root)):
                return _revert("invalid proof")
        self.nullifiers.add(nullifier)
        self.tvl -= amount
        return TxReceipt(tx_ref, TX_CONFIRMED, self.block, "withdraw")

    async def wait_for_receipt(self, tx_ref: str, timeout: float = 60.0) -> TxReceipt:
        deadline = time.monotonic() + timeout
        while True:
            receipt = self.receipts.get(tx_ref)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                raise SubmissionError(f"no receipt for {short(tx_ref)} after {timeout}s", tx_ref=tx_ref)
            await asyncio.sleep(self.poll_interval)


__all__ = [
    "TX_CONFIRMED",
    "TX_REVERTED",
    "TxReceipt",
    "DepositEvent",
    "ChainClient",
    "LocalVault",
]
