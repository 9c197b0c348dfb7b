"""
Per-client delivery boundary.

A transport only has to report whether one envelope reached one client.
``deliver_with_timeout`` bounds every attempt and turns exceptions into
outcomes, so the coordinator never sees a transport error raised.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, Set

import structlog


logger = structlog.get_logger(__name__)


class Transport(Protocol):
    async def send(self, client_id: str, envelope) -> bool:
        ...


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class DeliveryAttempt:
    client_id: str
    outcome: DeliveryOutcome
    latency_ms: float
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == DeliveryOutcome.DELIVERED


async def deliver_with_timeout(
    transport: Transport,
    client_id: str,
    envelope,
    timeout: float,
) -> DeliveryAttempt:
    """Send one envelope, bounded by ``timeout`` seconds."""
    started = time.perf_counter()

    try:
        delivered = await asyncio.wait_for(transport.send(client_id, envelope), timeout)
        outcome = DeliveryOutcome.DELIVERED if delivered else DeliveryOutcome.FAILED
        error = None
    except asyncio.TimeoutError:
        outcome, error = DeliveryOutcome.TIMED_OUT, f"no response within {timeout}s"
    except Exception as e:
        outcome, error = DeliveryOutcome.FAILED, str(e)

    latency_ms = (time.perf_counter() - started) * 1000.0
    if outcome != DeliveryOutcome.DELIVERED:
        logger.info(
            "Delivery attempt failed",
            client_id=client_id,
            envelope_id=envelope.message_id,
            outcome=outcome.value,
            error=error,
        )

    return DeliveryAttempt(client_id=client_id, outcome=outcome, latency_ms=latency_ms, error=error)


class InMemoryTransport:
    """
    Records delivered envelopes per client.

    ``fail_clients`` report failure and ``hang_clients`` never answer, which
    lets tests exercise the failure and timeout paths.
    """

    def __init__(self):
        self.inboxes: Dict[str, List] = defaultdict(list)
        self.fail_clients: Set[str] = set()
        self.hang_clients: Set[str] = set()
        self.attempts: Dict[str, int] = defaultdict(int)

    async def send(self, client_id: str, envelope) -> bool:
        self.attempts[client_id] += 1

        if client_id in self.hang_clients:
            await asyncio.Event().wait()
        if client_id in self.fail_clients:
            return False

        self.inboxes[client_id].append(envelope)
        return True

    def received(self, client_id: str) -> List:
        return list(self.inboxes.get(client_id, ()))

    def message_ids(self, client_id: str) -> List[str]:
        return [envelope.message_id for envelope in self.received(client_id)]
