"""Proof-of-work challenge handling.

The upstream answers every completion request with a challenge that must be
solved before the request is accepted. The hash search itself sits behind
:class:`ProofOfWorkSolver` so the algorithm can be swapped without touching
the session client.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from .errors import SolverError

LOG = logging.getLogger("deepseek-gateway.pow")

COMPLETION_TARGET_PATH = "/api/v0/chat/completion"


@dataclass(frozen=True)
class PowChallenge:
    algorithm: str
    challenge: str
    salt: str
    difficulty: int
    expire_at: int
    signature: str
    target_path: str = COMPLETION_TARGET_PATH

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "PowChallenge":
        try:
            return cls(
                algorithm=str(data["algorithm"]),
                challenge=str(data["challenge"]),
                salt=str(data["salt"]),
                difficulty=int(data["difficulty"]),
                expire_at=int(data["expire_at"]),
                signature=str(data["signature"]),
                target_path=str(data.get("target_path") or COMPLETION_TARGET_PATH),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SolverError(f"malformed proof-of-work challenge: {exc}") from exc


@runtime_checkable
class ProofOfWorkSolver(Protocol):
    def solve(
        self,
        algorithm: str,
        challenge: str,
        salt: str,
        difficulty: int,
        expire_at: int,
    ) -> Optional[int]:
        ...


class Sha3Solver:
    """Bounded SHA3-256 search.

    Finds ``n < difficulty`` such that ``sha3_256(f"{salt}_{expire_at}_{n}")``
    equals the hex challenge. Returns ``None`` when nothing matches or the
    algorithm tag is not one this solver handles.
    """

    supported_algorithms = frozenset({"DeepSeekHashV1", "sha3-256"})

    def solve(
        self,
        algorithm: str,
        challenge: str,
        salt: str,
        difficulty: int,
        expire_at: int,
    ) -> Optional[int]:
        if algorithm not in self.supported_algorithms:
            LOG.warning("Unsupported proof-of-work algorithm %r", algorithm)
            return None
        target = challenge.lower()
        prefix = f"{salt}_{expire_at}_".encode("utf-8")
        base = hashlib.sha3_256(prefix)
        for n in range(max(0, int(difficulty))):
            h = base.copy()
            h.update(str(n).encode("ascii"))
            if h.hexdigest() == target:
                return n
        return None


def encode_envelope(challenge: PowChallenge, answer: int) -> str:
    """Encode the solved challenge as the ``x-ds-pow-response`` header value."""
    payload = {
        "algorithm": challenge.algorithm,
        "challenge": challenge.challenge,
        "salt": challenge.salt,
        "answer": answer,
        "signature": challenge.signature,
        "target_path": challenge.target_path,
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


class ProofOfWorkAdapter:
    """Serialises access to a solver and runs it off the event loop.

    Solvers may keep shared scratch memory, so only one ``solve`` runs at a
    time while the rest of the request pipeline stays concurrent. A cancelled
    caller does not stop its worker thread, so the thread lock is held by the
    worker itself and outlives the awaiting coroutine.
    """

    def __init__(self, solver: Optional[ProofOfWorkSolver] = None) -> None:
        self.solver: ProofOfWorkSolver = solver or Sha3Solver()
        self._lock = asyncio.Lock()
        self._thread_lock = threading.Lock()

    def _solve_locked(self, challenge: PowChallenge) -> Optional[int]:
        with self._thread_lock:
            return self.solver.solve(
                challenge.algorithm,
                challenge.challenge,
                challenge.salt,
                challenge.difficulty,
                challenge.expire_at,
            )

    async def solve(self, challenge: PowChallenge) -> int:
        async with self._lock:
            answer = await asyncio.to_thread(self._solve_locked, challenge)
        if answer is None:
            raise SolverError(
                f"no answer found for {challenge.algorithm} challenge "
                f"(difficulty={challenge.difficulty})"
            )
        return int(answer)

    async def answer(self, challenge: PowChallenge) -> str:
        return encode_envelope(challenge, await self.solve(challenge))
