"""
One conversational turn: quota gate, streamed decoding, persistence, metering.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, List, Optional

from fusha_tutor_memory.clock import Clock, utc_now
from fusha_tutor_memory.models import DecodeSkip, LearningSignal, Observation
from fusha_tutor_memory.protocol_decoder import StreamingDecoder
from fusha_tutor_memory.quota_tracker import QuotaCheck, QuotaTracker, UsageIncrement
from fusha_tutor_memory.stores import ObservationStore

logger = logging.getLogger(__name__)


@dataclass
class TurnOutcome:
    cleaned_text: str
    observations: List[Observation] = field(default_factory=list)
    signals: List[LearningSignal] = field(default_factory=list)
    skipped: List[DecodeSkip] = field(default_factory=list)
    usage: Optional[UsageIncrement] = None


class TutorTurn:
    """
    Usage::

        turn = TutorTurn(tracker, store, session_id, user_id)
        await turn.begin()                      # raises QuotaExceeded
        async for text in turn.stream(chunks):  # display-safe text
            ...
        outcome = await turn.complete(tokens_used)
    """

    def __init__(
        self,
        quota_tracker: QuotaTracker,
        observation_store: ObservationStore,
        session_id: str,
        user_id: str,
        lesson_id: Optional[str] = None,
        clock: Clock = utc_now,
    ):
        self.quota_tracker = quota_tracker
        self.observation_store = observation_store
        self.session_id = session_id
        self.user_id = user_id
        self.lesson_id = lesson_id
        self.decoder = StreamingDecoder(session_id, user_id=user_id, clock=clock)
        self.check: Optional[QuotaCheck] = None
        self._completion: Optional["asyncio.Future[TurnOutcome]"] = None

    async def begin(self) -> QuotaCheck:
        self.check = await self.quota_tracker.ensure_can_send(self.user_id)
        return self.check

    def feed(self, chunk: str) -> str:
        return self.decoder.feed(chunk)

    async def stream(self, chunks: AsyncIterable[str]) -> AsyncIterator[str]:
        """Yield display-safe text for each raw chunk, then the held-back tail."""
        async for chunk in chunks:
            text = self.decoder.feed(chunk)
            if text:
                yield text
        tail = self.decoder.flush()
        if tail:
            yield tail

    @property
    def completed(self) -> bool:
        return self._completion is not None and self._completion.done()

    async def complete(self, tokens_used: int) -> TurnOutcome:
        """
        Persist what the turn decoded and meter its usage.

        Runs once per turn; later calls return the first outcome. The work
        carries on if the caller is cancelled part way through. Store
        failures propagate, and usage is only recorded after the
        observations were written.
        """
        if self._completion is None:
            self._completion = asyncio.ensure_future(self._record(tokens_used))
        return await asyncio.shield(self._completion)

    async def _record(self, tokens_used: int) -> TurnOutcome:
        result = self.decoder.finish()
        stored = await self.observation_store.append(result.observations)
        await self.observation_store.append_signals(result.signals)
        usage = await self.quota_tracker.increment_usage(self.user_id, self.lesson_id, tokens_used)
        if stored or result.signals:
            logger.info(
                f"📝 [TutorTurn] Session {self.session_id}: {stored} observations, "
                f"{len(result.signals)} learning signals, {tokens_used} tokens"
            )
        return TurnOutcome(
            cleaned_text=result.cleaned_text,
            observations=result.observations,
            signals=result.signals,
            skipped=result.skipped,
            usage=usage,
        )
