"""
Per-call session state.

Each inbound call gets one CallSession keyed by Twilio's CallSid. Sessions
live in a SessionStore owned by the call flow controller; the in-memory store
is the default, and anything implementing the same get/put/delete contract
can replace it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from src.partfinder.catalog import CatalogItem
from src.partfinder.extract import ParsedQuery

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")


class CallStage(str, Enum):
    """Where a call is in the lookup flow."""
    GREETING = "greeting"
    AWAITING_SPEECH = "awaiting_speech"
    PRESENTING_RESULTS = "presenting_results"
    AWAITING_CHOICE = "awaiting_choice"
    TERMINATED = "terminated"


@dataclass
class CallSession:
    """Mutable state for a single call."""
    call_sid: str
    stage: CallStage = CallStage.GREETING
    cart: List[CatalogItem] = field(default_factory=list)
    last_results: Tuple[CatalogItem, ...] = ()
    last_query: Optional[ParsedQuery] = None
    updated_at: float = field(default_factory=time.time)

    def choice_for_digit(self, digits: Optional[str]) -> Optional[CatalogItem]:
        """Map a keypad digit ("1".."N") to one of the last results."""
        text = (digits or "").strip()
        if not text.isdigit():
            return None
        index = int(text) - 1
        if 0 <= index < len(self.last_results):
            return self.last_results[index]
        return None

    def cart_total(self) -> Decimal:
        """Sum of cart prices, rounded half-up to cents."""
        total = sum((item.price for item in self.cart), Decimal("0"))
        return total.quantize(CENTS, rounding=ROUND_HALF_UP)


class SessionStore(ABC):
    """Storage for call sessions keyed by call identifier."""

    @abstractmethod
    def get(self, call_sid: str) -> Optional[CallSession]:
        ...

    @abstractmethod
    def put(self, session: CallSession) -> None:
        ...

    @abstractmethod
    def delete(self, call_sid: str) -> bool:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...


class InMemorySessionStore(SessionStore):
    """
    Process-local session store.

    Sessions idle for longer than `ttl_seconds` are treated as expired and
    evicted on the next access. A ttl of 0 keeps sessions until deleted.
    """

    def __init__(
        self,
        ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = max(0.0, float(ttl_seconds or 0.0))
        self._clock = clock
        self._sessions: Dict[str, CallSession] = {}
        self._lock = threading.Lock()

    def _is_expired(self, session: CallSession, now: float) -> bool:
        return self.ttl_seconds > 0 and now - session.updated_at > self.ttl_seconds

    def _prune_locked(self, now: float) -> None:
        expired = [sid for sid, s in self._sessions.items() if self._is_expired(s, now)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Expired call sessions evicted", count=len(expired))

    def get(self, call_sid: str) -> Optional[CallSession]:
        if not call_sid:
            return None
        with self._lock:
            self._prune_locked(self._clock())
            return self._sessions.get(call_sid)

    def put(self, session: CallSession) -> None:
        now = self._clock()
        session.updated_at = now
        with self._lock:
            self._prune_locked(now)
            self._sessions[session.call_sid] = session

    def delete(self, call_sid: str) -> bool:
        with self._lock:
            return self._sessions.pop(call_sid, None) is not None

    def __len__(self) -> int:
        with self._lock:
            self._prune_locked(self._clock())
            return len(self._sessions)
