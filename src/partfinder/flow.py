"""
Call flow controller.

Drives one phone call through the parts lookup:

    GREETING -> AWAITING_SPEECH -> PRESENTING_RESULTS -> AWAITING_CHOICE
                     ^                                        |
                     +---- no results / invalid choice -------+
                                                              v
                                                         TERMINATED

Each Twilio webhook is one turn. A turn reads the caller's session, mutates
it, stores it back and returns the Prompt to render. Turns for the same call
never overlap (Twilio waits for our reply before posting the next one), so
the controller needs no per-session locking. Field extraction is the only
await in a turn.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence, Tuple

import structlog

from src.partfinder.catalog import Catalog, CatalogItem, search_parts
from src.partfinder.config import Config, get_config
from src.partfinder.extract import ExtractionResult, FieldExtractor, ParsedQuery
from src.partfinder.sessions import (
    CallSession,
    CallStage,
    InMemorySessionStore,
    SessionStore,
)
from src.partfinder.twiml import GatherDigits, GatherSpeech, Hangup, Prompt, Redirect

logger = structlog.get_logger(__name__)

QUOTE_DIGIT = "9"
HANGUP_DIGIT = "0"


def format_money(amount: Decimal) -> str:
    """Render a price the way it is spoken, always with cents ("5.00")."""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _count(n: int, noun: str) -> str:
    return f"{n} {noun}" if n == 1 else f"{n} {noun}s"


class CallFlowController:
    """
    The call session state machine.

    Owns the session store; the catalog and extractor are injected so tests
    can run the whole flow without network access.
    """

    def __init__(
        self,
        catalog: Catalog,
        extractor: FieldExtractor,
        sessions: Optional[SessionStore] = None,
        config: Optional[Config] = None,
    ):
        if config is None:
            config = get_config()
        if sessions is None:
            sessions = InMemorySessionStore(ttl_seconds=config.session_ttl_seconds)

        self.config = config
        self.catalog = catalog
        self.extractor = extractor
        self.sessions = sessions

        self.extraction_failures = 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_stage(self, session: CallSession, stage: CallStage) -> None:
        if session.stage != stage:
            logger.info(
                "Call stage changed",
                call_sid=session.call_sid,
                from_stage=session.stage.value,
                to_stage=stage.value,
            )
        session.stage = stage

    def _get_or_create(self, call_sid: str) -> CallSession:
        session = self.sessions.get(call_sid)
        if session is None:
            session = CallSession(call_sid=call_sid)
            logger.info("Call session created", call_sid=call_sid)
        return session

    def _finish(self, session: CallSession) -> None:
        self._set_stage(session, CallStage.TERMINATED)
        self.sessions.delete(session.call_sid)
        logger.info(
            "Call session closed",
            call_sid=session.call_sid,
            cart_items=len(session.cart),
        )

    def lookup(self, query: ParsedQuery) -> List[CatalogItem]:
        """
        Search the catalog for a parsed query.

        An empty query finds nothing, so a failed extraction reads as
        "no results" instead of the whole catalog.
        """
        if query.is_empty:
            return []
        return search_parts(self.catalog, query.year, query.make, query.model, query.item)

    def _options(self, results: Sequence[CatalogItem], *, with_prices: bool) -> List[str]:
        lines = []
        for i, item in enumerate(results, start=1):
            if with_prices:
                lines.append(
                    f"Press {i} to add {item.title} priced at "
                    f"{format_money(item.price)} dollars to your cart."
                )
            else:
                lines.append(f"Press {i} to add {item.title}.")
        lines.append("Press 9 to hear your cart and get a quote. Press 0 to end this call.")
        return lines

    def _choice_prompt(self, says: List[str]) -> Prompt:
        return Prompt(says=says, terminal=GatherDigits(timeout=self.config.digit_timeout_seconds))

    def _restart_prompt(self, message: str) -> Prompt:
        return Prompt(says=[message], terminal=Redirect())

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def handle_voice(self, call_sid: Optional[str] = None) -> Prompt:
        """Call start (or restart): greet and listen for the request."""
        if call_sid:
            session = self._get_or_create(call_sid)
            self._set_stage(session, CallStage.AWAITING_SPEECH)
            self.sessions.put(session)

        return Prompt(
            says=[
                f"Welcome to {self.config.company_name}. "
                "Please say the year, make, model, and the part you need."
            ],
            terminal=GatherSpeech(),
        )

    async def handle_speech(self, call_sid: Optional[str], speech: Optional[str]) -> Prompt:
        """Speech captured: extract fields, search, and read back the results."""
        if not call_sid:
            logger.warning("Speech turn without a call identifier")
            return self._restart_prompt("Sorry, something went wrong. Let us start over.")

        session = self._get_or_create(call_sid)
        self._set_stage(session, CallStage.AWAITING_SPEECH)

        result: ExtractionResult = await self.extractor.extract(speech or "")
        if not result.success:
            self.extraction_failures += 1
            logger.info("No fields extracted", call_sid=call_sid, error=result.error)

        query = result.query
        matches = self.lookup(query) if result.success else []

        session.last_query = query
        session.last_results = tuple(matches[: self.config.max_choices])

        if not matches:
            self.sessions.put(session)
            logger.info("No parts found", call_sid=call_sid, query=query.describe())
            described = query.describe()
            if described:
                message = f"Sorry, I couldn't find parts for {described}. Please try again."
            else:
                message = "Sorry, I couldn't find any matching parts. Please try again."
            return self._restart_prompt(message)

        self._set_stage(session, CallStage.PRESENTING_RESULTS)
        vehicle = " ".join(p for p in (query.year, query.make, query.model) if p)
        intro = f"I found {_count(len(matches), 'item')}"
        intro += f" for {vehicle}." if vehicle else "."
        says = [intro] + self._options(session.last_results, with_prices=True)

        self._set_stage(session, CallStage.AWAITING_CHOICE)
        self.sessions.put(session)
        logger.info(
            "Parts found",
            call_sid=call_sid,
            match_count=len(matches),
            offered=len(session.last_results),
        )
        return self._choice_prompt(says)

    def handle_choice(self, call_sid: Optional[str], digits: Optional[str]) -> Prompt:
        """Keypad digit captured: add to cart, quote, or hang up."""
        session = self.sessions.get(call_sid or "")
        if (
            session is None
            or session.stage != CallStage.AWAITING_CHOICE
            or not session.last_results
        ):
            logger.info("Choice for missing or expired session", call_sid=call_sid)
            return self._restart_prompt("Session expired. Let us start over.")

        digit = (digits or "").strip()

        if digit == HANGUP_DIGIT:
            self._finish(session)
            return Prompt(says=["Thank you for calling. Goodbye."], terminal=Hangup())

        if digit == QUOTE_DIGIT:
            if not session.cart:
                self.sessions.put(session)
                logger.info("Quote requested with empty cart", call_sid=call_sid)
                says = ["Your cart is empty."] + self._options(session.last_results, with_prices=False)
                return self._choice_prompt(says)

            total = session.cart_total()
            count = len(session.cart)
            logger.info(
                "Quote delivered",
                call_sid=call_sid,
                cart_items=count,
                total=str(total),
            )
            self._finish(session)
            return Prompt(
                says=[
                    f"Your cart has {_count(count, 'item')}. Total is {format_money(total)} dollars. "
                    "We will email your quote. Goodbye."
                ],
                terminal=Hangup(),
            )

        item = session.choice_for_digit(digit)
        if item is not None:
            session.cart.append(item)
            self.sessions.put(session)
            logger.info(
                "Item added to cart",
                call_sid=call_sid,
                title=item.title,
                cart_items=len(session.cart),
            )
            says = [f"{item.title} added to cart."] + self._options(
                session.last_results, with_prices=False
            )
            return self._choice_prompt(says)

        logger.info("Invalid choice", call_sid=call_sid, digits=digit)
        self._set_stage(session, CallStage.GREETING)
        self.sessions.put(session)
        return self._restart_prompt("Sorry, invalid choice. Redirecting to start.")

    async def parse_and_search(self, transcript: str) -> Tuple[ParsedQuery, List[CatalogItem]]:
        """Local API: extract fields from a typed transcript and search."""
        result = await self.extractor.extract(transcript)
        if not result.success:
            self.extraction_failures += 1
            return result.query, []
        return result.query, self.lookup(result.query)
