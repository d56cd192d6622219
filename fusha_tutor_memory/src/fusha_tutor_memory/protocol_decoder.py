"""
Protocol Decoder

Pulls the tutor's private inline protocol out of generated text:

    [GRAM:<word_id>|<feature>|<student>|<correct>|correct|incorrect]
    [TRANS:<word_id>|<student>|<correct>|correct|incorrect]
    [OBS:<type>|<category>|<skill>|<behaviour>]
    [ERROR_LOG] type: ... student_said: "..." correction: "..." context: "..." [/ERROR_LOG]

Decoding is pure and total. A fragment that matches the outer bracket syntax
is always removed from the display text; it only yields a record when every
field validates. Rejections are reported as DecodeSkip and logged at debug.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Iterator, List, NamedTuple, Optional, Tuple

from fusha_tutor_memory.clock import Clock, utc_now
from fusha_tutor_memory.models import (
    DecodeResult,
    DecodeSkip,
    LearningSignal,
    Observation,
    ObservationKind,
    SIGNAL_TYPES,
    SKILL_CATEGORIES,
)

logger = logging.getLogger(__name__)

GRAM_OPENER = "[GRAM:"
TRANS_OPENER = "[TRANS:"
OBS_OPENER = "[OBS:"
ERROR_LOG_OPENER = "[ERROR_LOG]"
ERROR_LOG_CLOSER = "[/ERROR_LOG]"

OPENERS = (GRAM_OPENER, TRANS_OPENER, OBS_OPENER, ERROR_LOG_OPENER)

VERDICTS = {"correct": True, "incorrect": False}
FIELD_COUNTS = {GRAM_OPENER: 5, TRANS_OPENER: 4, OBS_OPENER: 4}
ERROR_LOG_KEYS = ("type", "student_said", "correction", "context")

_ASCII_DIGITS = frozenset("0123456789")
_HORIZONTAL_SPACE = " \t"
_ARABIC_RUN = re.compile(r"[؀-ۿݐ-ݿࢠ-ࣿﭐ-﷿ﹰ-﻿]+")
_ERROR_LOG_KEY = re.compile(r"(?<!\w)(type|student_said|correction|context)\s*:")


class Fragment(NamedTuple):
    """One bracketed protocol fragment located in the source text."""
    opener: str
    start: int
    end: int
    body: str


def extract_arabic(text: str) -> Optional[str]:
    """Join every Arabic-script run in ``text`` with spaces."""
    runs = _ARABIC_RUN.findall(text)
    return " ".join(runs) if runs else None


def is_word_id(value: str) -> bool:
    return bool(value) and all(ch in _ASCII_DIGITS for ch in value)


def _match_opener(text: str, index: int) -> Optional[str]:
    for opener in OPENERS:
        if text.startswith(opener, index):
            return opener
    return None


def iter_fragments(text: str) -> Iterator[Fragment]:
    """
    Tokenize ``text`` into protocol fragments.

    A tag fragment is an opener, a body without ``[`` and the first ``]``.
    An ERROR_LOG fragment runs to the first closing marker; an unterminated
    block is ordinary text.
    """
    pos = 0
    while True:
        index = text.find("[", pos)
        if index == -1:
            return
        opener = _match_opener(text, index)
        if opener is None:
            pos = index + 1
            continue

        body_start = index + len(opener)
        if opener == ERROR_LOG_OPENER:
            close = text.find(ERROR_LOG_CLOSER, body_start)
            if close == -1:
                pos = index + 1
                continue
            end = close + len(ERROR_LOG_CLOSER)
            yield Fragment(opener, index, end, text[body_start:close])
            pos = end
            continue

        close = text.find("]", body_start)
        if close == -1:
            return
        nested = text.find("[", body_start, close)
        if nested != -1:
            # Not a fragment; the inner bracket may start one.
            pos = nested
            continue
        yield Fragment(opener, index, close + 1, text[body_start:close])
        pos = close + 1


def holdback_index(text: str) -> int:
    """
    Index from which ``text`` might still turn into a fragment once more
    input arrives. Everything before it is safe to display.
    """
    pos = 0
    while True:
        index = text.find("[", pos)
        if index == -1:
            return len(text)
        rest = text[index:]
        if any(len(rest) < len(opener) and opener.startswith(rest) for opener in OPENERS):
            return index

        opener = _match_opener(text, index)
        if opener is None:
            pos = index + 1
            continue

        body_start = index + len(opener)
        if opener == ERROR_LOG_OPENER:
            close = text.find(ERROR_LOG_CLOSER, body_start)
            if close == -1:
                return index
            pos = close + len(ERROR_LOG_CLOSER)
            continue

        close = text.find("]", body_start)
        nested = text.find("[", body_start, close if close != -1 else len(text))
        if nested != -1:
            pos = nested
            continue
        if close == -1:
            return index
        pos = close + 1


class ProtocolDecoder:
    """Decodes protocol fragments into Observations and LearningSignals."""

    def decode_text(
        self,
        text: str,
        session_id: str = "",
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
        preceding_char: Optional[str] = None,
        trim: bool = True,
    ) -> DecodeResult:
        """
        Decode every fragment in ``text``.

        Args:
            text: Raw tutor text
            session_id: Lesson the records belong to
            user_id: Learner, when known
            now: Creation timestamp for the records (defaults to UTC now)
            preceding_char: Last character shown before ``text`` (streaming)
            trim: Trim the result when any fragment was stripped

        Returns:
            DecodeResult; ``cleaned_text == text`` when nothing was stripped
        """
        result = DecodeResult()
        if not text:
            result.cleaned_text = text or ""
            return result

        now = now or utc_now()
        pieces: List[str] = []
        cursor = 0
        sequence = 0

        for fragment in iter_fragments(text):
            pieces.append(text[cursor:fragment.start])
            cursor = self._span_end(text, fragment, preceding_char)

            # Keep in-message order when records are later sorted by creation time.
            created_at = now + timedelta(microseconds=sequence)
            records, skip = self._decode_fragment(fragment, session_id, user_id, created_at)
            if skip is not None:
                logger.debug(f"🔍 [ProtocolDecoder] Dropped {skip.tag} fragment: {skip.reason} ({skip.raw[:80]!r})")
                result.skipped.append(skip)
            for record in records:
                sequence += 1
                if isinstance(record, LearningSignal):
                    result.signals.append(record)
                else:
                    result.observations.append(record)

        if cursor == 0 and not pieces:
            result.cleaned_text = text
            return result

        pieces.append(text[cursor:])
        cleaned = "".join(pieces)
        result.cleaned_text = cleaned.strip() if trim else cleaned
        return result

    @staticmethod
    def _span_end(text: str, fragment: Fragment, preceding_char: Optional[str]) -> int:
        """End of the stripped span: the fragment plus its trailing spacing."""
        if fragment.start > 0:
            before = text[fragment.start - 1]
        else:
            before = preceding_char
        end = fragment.end
        if before is None or before.isspace():
            while end < len(text) and text[end] in _HORIZONTAL_SPACE:
                end += 1
        at_line_start = before is None or before == "\n"
        if at_line_start:
            if text.startswith("\r\n", end):
                end += 2
            elif text.startswith("\n", end):
                end += 1
        return end

    def _decode_fragment(
        self,
        fragment: Fragment,
        session_id: str,
        user_id: Optional[str],
        created_at: datetime,
    ) -> Tuple[list, Optional[DecodeSkip]]:
        raw = fragment.body
        if fragment.opener == ERROR_LOG_OPENER:
            entries = parse_error_log(raw)
            if not entries:
                return [], DecodeSkip("ERROR_LOG", raw, "no recognised fields")
            observations = [
                Observation(
                    kind=ObservationKind.FREEFORM_ERROR,
                    session_id=session_id,
                    user_id=user_id,
                    student_answer=entry.get("student_said", ""),
                    correct_answer=entry.get("correction", ""),
                    is_correct=False,
                    error_type=entry.get("type", ""),
                    context=entry.get("context", ""),
                    created_at=created_at + timedelta(microseconds=offset),
                )
                for offset, entry in enumerate(entries)
            ]
            return observations, None

        tag = fragment.opener[1:-1]
        fields = raw.split("|")
        expected = FIELD_COUNTS[fragment.opener]
        if len(fields) != expected:
            return [], DecodeSkip(tag, raw, f"expected {expected} fields, got {len(fields)}")

        if fragment.opener == OBS_OPENER:
            return self._decode_signal(fields, raw, session_id, user_id, created_at)

        word_id = fields[0]
        if not is_word_id(word_id):
            return [], DecodeSkip(tag, raw, f"non-numeric word id {word_id!r}")
        verdict = fields[-1]
        if verdict not in VERDICTS:
            return [], DecodeSkip(tag, raw, f"invalid verdict {verdict!r}")
        values = [value.strip() for value in fields[1:-1]]
        if not all(values):
            return [], DecodeSkip(tag, raw, "empty field")

        if fragment.opener == GRAM_OPENER:
            feature, student_answer, correct_answer = values
            kind = ObservationKind.GRAMMAR_CHECK
        else:
            feature = None
            student_answer, correct_answer = values
            kind = ObservationKind.TRANSLATION_CHECK

        observation = Observation(
            kind=kind,
            session_id=session_id,
            user_id=user_id,
            word_id=int(word_id),
            feature=feature,
            student_answer=student_answer,
            correct_answer=correct_answer,
            is_correct=VERDICTS[verdict],
            created_at=created_at,
        )
        return [observation], None

    @staticmethod
    def _decode_signal(
        fields: List[str],
        raw: str,
        session_id: str,
        user_id: Optional[str],
        created_at: datetime,
    ) -> Tuple[list, Optional[DecodeSkip]]:
        signal_type, category, skill, behaviour = fields
        if signal_type not in SIGNAL_TYPES:
            return [], DecodeSkip("OBS", raw, f"unknown observation type {signal_type!r}")
        if category not in SKILL_CATEGORIES:
            return [], DecodeSkip("OBS", raw, f"unknown skill category {category!r}")
        skill, behaviour = skill.strip(), behaviour.strip()
        if not skill or not behaviour:
            return [], DecodeSkip("OBS", raw, "empty field")
        signal = LearningSignal(
            session_id=session_id,
            user_id=user_id,
            signal_type=signal_type,
            skill_category=category,
            specific_skill=skill,
            observed_behavior=behaviour,
            arabic_example=extract_arabic(behaviour),
            created_at=created_at,
        )
        return [signal], None


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def parse_error_log(body: str) -> List[dict]:
    """
    Parse the key/value body of an ERROR_LOG block.

    Values may be quoted. A ``type:`` key (or any repeated key) after the
    first field opens a new entry. Absent keys default to an empty string.
    """
    entries: List[dict] = []
    current: dict = {}
    pos = 0
    while True:
        match = _ERROR_LOG_KEY.search(body, pos)
        if match is None:
            break
        key = match.group(1)
        value_start = match.end()
        while value_start < len(body) and body[value_start] in _HORIZONTAL_SPACE:
            value_start += 1

        if body.startswith('"', value_start):
            closing = body.find('"', value_start + 1)
            if closing == -1:
                value = body[value_start + 1:].strip()
                pos = len(body)
            else:
                value = body[value_start + 1:closing]
                pos = closing + 1
        else:
            stops = [len(body)]
            newline = body.find("\n", value_start)
            if newline != -1:
                stops.append(newline)
            following = _ERROR_LOG_KEY.search(body, value_start)
            if following is not None:
                stops.append(following.start())
            value_end = min(stops)
            value = _unquote(body[value_start:value_end])
            pos = value_end

        if current and (key == "type" or key in current):
            entries.append(current)
            current = {}
        current[key] = value

    if current:
        entries.append(current)
    return [{key: entry.get(key, "") for key in ERROR_LOG_KEYS} for entry in entries]


def decode(
    text: str,
    session_id: str = "",
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[List[Observation], str]:
    """Decode graded observations and return them with the display text."""
    result = ProtocolDecoder().decode_text(text, session_id=session_id, user_id=user_id, now=now)
    return result.observations, result.cleaned_text


class StreamingDecoder:
    """
    Incremental decoder for streamed tutor output.

    ``feed`` returns only text that can no longer become part of a fragment;
    ``finish`` flushes the remainder and returns every decoded record.
    """

    MAX_HELD_CHARS = 4096

    def __init__(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        clock: Clock = utc_now,
        decoder: Optional[ProtocolDecoder] = None,
    ):
        self.session_id = session_id
        self.user_id = user_id
        self.clock = clock
        self.decoder = decoder or ProtocolDecoder()
        self._pending = ""
        self._last_char: Optional[str] = None
        self._pieces: List[str] = []
        self._stripped_any = False
        self._result = DecodeResult()
        self._finished = False

    def feed(self, chunk: str) -> str:
        if self._finished:
            raise RuntimeError("StreamingDecoder already finished")
        if not chunk:
            return ""
        self._pending += chunk
        cut = holdback_index(self._pending)
        if len(self._pending) - cut > self.MAX_HELD_CHARS:
            logger.debug("🔍 [StreamingDecoder] Releasing oversized unterminated fragment as text")
            cut = len(self._pending)
        ready, self._pending = self._pending[:cut], self._pending[cut:]
        if not self._pending:
            hold = self._open_trailing_span(ready)
            if hold is not None:
                ready, self._pending = ready[:hold], ready[hold:]
        return self._consume(ready)

    def _open_trailing_span(self, text: str) -> Optional[int]:
        """
        Start of a final fragment whose stripped span runs to the end of
        ``text``; the spacing after it may still arrive in the next chunk.
        """
        last = None
        for last in iter_fragments(text):
            pass
        if last is None:
            return None
        end = ProtocolDecoder._span_end(text, last, self._last_char)
        if end == len(text) and not text.endswith("\n"):
            return last.start
        return None

    def flush(self) -> str:
        """Release held-back text; no further input is accepted."""
        if self._finished:
            return ""
        tail = self._consume(self._pending)
        self._pending = ""
        self._finished = True
        return tail

    def finish(self) -> DecodeResult:
        self.flush()
        cleaned = "".join(self._pieces)
        self._result.cleaned_text = cleaned.strip() if self._stripped_any else cleaned
        return self._result

    def _consume(self, ready: str) -> str:
        if not ready:
            return ""
        decoded = self.decoder.decode_text(
            ready,
            session_id=self.session_id,
            user_id=self.user_id,
            now=self.clock(),
            preceding_char=self._last_char,
            trim=False,
        )
        if decoded.cleaned_text != ready:
            self._stripped_any = True
        self._result.observations.extend(decoded.observations)
        self._result.signals.extend(decoded.signals)
        self._result.skipped.extend(decoded.skipped)
        self._last_char = ready[-1]
        self._pieces.append(decoded.cleaned_text)
        return decoded.cleaned_text
