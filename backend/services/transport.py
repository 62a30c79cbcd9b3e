# services/transport.py
import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from services.errors import TransportFailure

logger = logging.getLogger(__name__)


def flip_byte(data: bytes, index: int = 0) -> bytes:
    """Copy of ``data`` with every bit of one byte inverted"""
    if not data:
        return data
    corrupted = bytearray(data)
    corrupted[index % len(corrupted)] ^= 0xFF
    return bytes(corrupted)


class Transport(ABC):
    """Delivers one part attempt and returns the bytes the receiver got."""

    @abstractmethod
    async def send(self, part_number: int, data: bytes, attempt: int) -> bytes:
        ...


class SimulatedTransport(Transport):
    def __init__(
        self,
        latency_seconds: float = 0.05,
        failure_rate: float = 0.0,
        corruption_rate: float = 0.0,
        seed: Optional[int] = None,
    ):
        if not 0.0 <= failure_rate <= 1.0 or not 0.0 <= corruption_rate <= 1.0:
            raise ValueError("failure_rate and corruption_rate must be within [0, 1]")
        self.latency_seconds = latency_seconds
        self.failure_rate = failure_rate
        self.corruption_rate = corruption_rate
        self._random = random.Random(seed)

    async def send(self, part_number: int, data: bytes, attempt: int) -> bytes:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
        if self._random.random() < self.failure_rate:
            raise TransportFailure(f"Simulated network error on part {part_number} (attempt {attempt})")
        if data and self._random.random() < self.corruption_rate:
            logger.debug("Corrupting part %s on attempt %s", part_number, attempt)
            return flip_byte(data, self._random.randrange(len(data)))
        return data


class ScriptedTransport(Transport):
    """Deterministic transport: fails or corrupts the first N sends of a part.

    ``failures`` and ``corruptions`` map part numbers to how many leading
    attempts misbehave. Every send is recorded in ``sent`` as
    ``(part_number, attempt)``.
    """

    def __init__(
        self,
        failures: Optional[Dict[int, int]] = None,
        corruptions: Optional[Dict[int, int]] = None,
        latency_seconds: float = 0.0,
        latencies: Optional[Dict[int, float]] = None,
    ):
        self.failures = dict(failures or {})
        self.corruptions = dict(corruptions or {})
        self.latency_seconds = latency_seconds
        self.latencies = dict(latencies or {})
        self.sent: List[Tuple[int, int]] = []
        self.completed: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, part_number: int, data: bytes, attempt: int) -> bytes:
        self.sent.append((part_number, attempt))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latencies.get(part_number, self.latency_seconds))
            if self.failures.get(part_number, 0) > 0:
                self.failures[part_number] -= 1
                raise TransportFailure(f"Scripted failure on part {part_number} (attempt {attempt})")
            if self.corruptions.get(part_number, 0) > 0:
                self.corruptions[part_number] -= 1
                return flip_byte(data)
            self.completed.append(part_number)
            return data
        finally:
            self.in_flight -= 1
