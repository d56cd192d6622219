"""
Unit Tests for the Protocol Decoder

Tests tag decoding, display-text cleanup and streamed decoding.
"""

import pytest
import sys
import os
from datetime import datetime, timezone

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "fusha_tutor_memory", "src"))

from fusha_tutor_memory.clock import FixedClock
from fusha_tutor_memory.models import ObservationKind
from fusha_tutor_memory.protocol_decoder import (
    ProtocolDecoder,
    StreamingDecoder,
    decode,
    holdback_index,
    iter_fragments,
    parse_error_log,
)

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


class TestProtocolDecoder:
    """Test suite for ProtocolDecoder.decode_text."""

    @pytest.fixture
    def decoder(self):
        return ProtocolDecoder()

    def test_grammar_tag_is_decoded_and_stripped(self, decoder):
        """A graded GRAM tag becomes one observation and leaves the display text."""
        result = decoder.decode_text(
            "Right! [GRAM:5|part_of_speech|verb|noun|incorrect] Next question...",
            session_id="lesson-1",
            user_id="user-1",
            now=NOW,
        )

        assert result.cleaned_text == "Right! Next question..."
        assert len(result.observations) == 1
        observation = result.observations[0]
        assert observation.kind is ObservationKind.GRAMMAR_CHECK
        assert observation.word_id == 5
        assert observation.feature == "part_of_speech"
        assert observation.student_answer == "verb"
        assert observation.correct_answer == "noun"
        assert observation.is_correct is False
        assert observation.session_id == "lesson-1"
        assert observation.user_id == "user-1"
        assert result.skipped == []

    def test_translation_tag(self, decoder):
        result = decoder.decode_text("[TRANS:12|book|كتاب|correct]", session_id="s", now=NOW)

        assert result.cleaned_text == ""
        observation = result.observations[0]
        assert observation.kind is ObservationKind.TRANSLATION_CHECK
        assert observation.word_id == 12
        assert observation.feature is None
        assert observation.student_answer == "book"
        assert observation.correct_answer == "كتاب"
        assert observation.is_correct is True

    def test_non_numeric_word_id_is_skipped_but_stripped(self, decoder):
        """An 'undefined' word id yields no observation and never reaches the learner."""
        result = decoder.decode_text(
            "Well done [GRAM:undefined|part_of_speech|verb|noun|incorrect] keep going",
            now=NOW,
        )

        assert result.observations == []
        assert result.cleaned_text == "Well done keep going"
        assert len(result.skipped) == 1
        assert result.skipped[0].tag == "GRAM"
        assert "word id" in result.skipped[0].reason

    def test_padded_word_id_is_rejected(self, decoder):
        result = decoder.decode_text("[GRAM: 5|gender|مذكر|مؤنث|incorrect]", now=NOW)

        assert result.observations == []
        assert len(result.skipped) == 1

    def test_wrong_field_count_is_skipped(self, decoder):
        result = decoder.decode_text("Try again. [GRAM:5|grammatical_case|a|b]", now=NOW)

        assert result.observations == []
        assert result.cleaned_text == "Try again."
        assert "expected 5 fields, got 4" in result.skipped[0].reason

    def test_verdict_must_be_exact(self, decoder):
        result = decoder.decode_text("[TRANS:3|pen|قلم|Correct]", now=NOW)

        assert result.observations == []
        assert "verdict" in result.skipped[0].reason

    def test_empty_field_is_skipped(self, decoder):
        result = decoder.decode_text("[GRAM:3|  |قلم|قلم|correct]", now=NOW)

        assert result.observations == []
        assert result.skipped[0].reason == "empty field"

    def test_text_without_fragments_is_unchanged(self, decoder):
        """Plain text, including brackets and surrounding whitespace, round-trips exactly."""
        text = "  مرحبا [not a tag] and [GRAM without colon \n"
        result = decoder.decode_text(text, now=NOW)

        assert result.cleaned_text == text
        assert result.observations == []
        assert result.skipped == []

    def test_empty_text(self, decoder):
        result = decoder.decode_text("", now=NOW)

        assert result.cleaned_text == ""
        assert result.observations == []

    def test_fragment_on_its_own_line_takes_its_newline(self, decoder):
        text = "Good.\n[GRAM:1|root|ك ت ب|ك ت ب|correct]\nNext one."
        result = decoder.decode_text(text, now=NOW)

        assert result.cleaned_text == "Good.\nNext one."
        assert result.observations[0].is_correct is True

    def test_multiple_tags_keep_message_order(self, decoder):
        text = (
            "[GRAM:1|gender|مذكر|مذكر|correct] "
            "[TRANS:2|house|بيت|correct] "
            "[GRAM:3|number|مفرد|جمع|incorrect] Done."
        )
        result = decoder.decode_text(text, now=NOW)

        assert [o.word_id for o in result.observations] == [1, 2, 3]
        timestamps = [o.created_at for o in result.observations]
        assert timestamps == sorted(timestamps)
        assert len(set(timestamps)) == 3
        assert result.cleaned_text == "Done."

    def test_nested_opener_restarts_scan(self, decoder):
        """An opener inside a tag body is where the real fragment begins."""
        result = decoder.decode_text("[GRAM:[GRAM:3|gender|مذكر|مؤنث|incorrect] ok", now=NOW)

        assert len(result.observations) == 1
        assert result.observations[0].word_id == 3
        assert result.cleaned_text == "[GRAM: ok"

    def test_module_level_decode(self):
        observations, cleaned = decode(
            "Right! [GRAM:5|part_of_speech|verb|noun|incorrect] Next question...",
            session_id="lesson-1",
            now=NOW,
        )

        assert cleaned == "Right! Next question..."
        assert len(observations) == 1


class TestLearningSignals:
    """Test suite for OBS tags."""

    @pytest.fixture
    def decoder(self):
        return ProtocolDecoder()

    def test_obs_tag_becomes_signal_with_arabic_example(self, decoder):
        result = decoder.decode_text(
            "Nice! [OBS:strength|grammar|case endings|Correctly used الكتابُ as the subject]",
            session_id="s",
            now=NOW,
        )

        assert result.observations == []
        assert len(result.signals) == 1
        signal = result.signals[0]
        assert signal.signal_type == "strength"
        assert signal.skill_category == "grammar"
        assert signal.specific_skill == "case endings"
        assert signal.arabic_example == "الكتابُ"
        assert result.cleaned_text == "Nice!"

    def test_unknown_signal_type_is_skipped(self, decoder):
        result = decoder.decode_text("[OBS:mistake|grammar|x|y]", now=NOW)

        assert result.signals == []
        assert "observation type" in result.skipped[0].reason

    def test_unknown_category_is_skipped(self, decoder):
        result = decoder.decode_text("[OBS:weakness|spelling|hamza|wrote ا for أ]", now=NOW)

        assert result.signals == []
        assert "skill category" in result.skipped[0].reason

    def test_pipe_in_description_is_rejected(self, decoder):
        result = decoder.decode_text("[OBS:pattern|grammar|idafa|mixes | order] ok", now=NOW)

        assert result.signals == []
        assert result.cleaned_text == "ok"


class TestErrorLog:
    """Test suite for ERROR_LOG blocks."""

    @pytest.fixture
    def decoder(self):
        return ProtocolDecoder()

    def test_error_log_block(self, decoder):
        text = (
            "Nice try.\n"
            "[ERROR_LOG]\n"
            "type: grammar\n"
            "student_said: \"ذهبت البنت\"\n"
            "correction: \"ذهبت البنتُ\"\n"
            "context: \"case ending on the subject\"\n"
            "[/ERROR_LOG]\n"
            "Let us continue."
        )
        result = decoder.decode_text(text, session_id="s", user_id="u", now=NOW)

        assert result.cleaned_text == "Nice try.\nLet us continue."
        assert len(result.observations) == 1
        error = result.observations[0]
        assert error.kind is ObservationKind.FREEFORM_ERROR
        assert error.error_type == "grammar"
        assert error.student_answer == "ذهبت البنت"
        assert error.correct_answer == "ذهبت البنتُ"
        assert error.context == "case ending on the subject"
        assert error.is_correct is False

    def test_type_key_starts_a_new_entry(self):
        entries = parse_error_log(
            'type: gender student_said: "كبير" correction: "كبيرة"\n'
            'type: vocabulary student_said: "باب" correction: "بيت"'
        )

        assert [e["type"] for e in entries] == ["gender", "vocabulary"]
        assert entries[1]["correction"] == "بيت"
        assert entries[0]["context"] == ""

    def test_empty_block_yields_nothing(self, decoder):
        result = decoder.decode_text("A [ERROR_LOG] [/ERROR_LOG] B", now=NOW)

        assert result.observations == []
        assert result.cleaned_text == "A B"
        assert result.skipped[0].tag == "ERROR_LOG"

    def test_unterminated_block_is_text(self, decoder):
        text = "[ERROR_LOG] type: grammar"
        result = decoder.decode_text(text, now=NOW)

        assert result.cleaned_text == text
        assert result.observations == []


class TestTokenizer:

    def test_iter_fragments_positions(self):
        text = "a [TRANS:1|x|y|correct] b"
        fragments = list(iter_fragments(text))

        assert len(fragments) == 1
        assert text[fragments[0].start:fragments[0].end] == "[TRANS:1|x|y|correct]"
        assert fragments[0].body == "1|x|y|correct"

    def test_holdback_partial_opener(self):
        assert holdback_index("Right! [GR") == 7
        assert holdback_index("Right! [") == 7

    def test_holdback_open_fragment(self):
        assert holdback_index("ok [GRAM:5|case") == 3

    def test_holdback_plain_bracket_released(self):
        text = "see [note] here"
        assert holdback_index(text) == len(text)


class TestStreamingDecoder:
    """Test suite for incremental decoding of streamed chunks."""

    @pytest.fixture
    def stream(self):
        return StreamingDecoder("lesson-1", user_id="user-1", clock=FixedClock(NOW))

    def test_tag_split_across_chunks(self, stream):
        chunks = ["Right! [GR", "AM:5|part_of_speech|verb|noun|inc", "orrect] Next question..."]
        shown = [stream.feed(chunk) for chunk in chunks]
        shown.append(stream.flush())

        assert shown[0] == "Right! "
        assert shown[1] == ""
        assert "".join(shown) == "Right! Next question..."
        result = stream.finish()
        assert result.cleaned_text == "Right! Next question..."
        assert len(result.observations) == 1
        assert result.observations[0].user_id == "user-1"

    def test_chunk_ending_on_closing_bracket(self, stream):
        text = "Right! [GRAM:5|part_of_speech|verb|noun|incorrect] Next question..."
        shown = stream.feed("Right! [GRAM:5|part_of_speech|verb|noun|incorrect]")
        shown += stream.feed(" Next question...")
        shown += stream.flush()

        assert shown == "Right! Next question..."
        result = stream.finish()
        assert result.cleaned_text == decode(text)[1]
        assert len(result.observations) == 1

    def test_spacing_split_over_several_chunks(self, stream):
        chunks = ["Good. [TRANS:4|pen|قلم|correct]", " ", "\t", "Next."]
        shown = "".join(stream.feed(chunk) for chunk in chunks) + stream.flush()

        assert shown == "Good. Next."
        assert len(stream.finish().observations) == 1

    def test_plain_text_streams_through(self, stream):
        assert stream.feed("see [note] ") == "see [note] "
        assert stream.feed("here") == "here"
        assert stream.finish().cleaned_text == "see [note] here"

    def test_trailing_bracket_released_on_flush(self, stream):
        assert stream.feed("a [") == "a "
        assert stream.flush() == "["
        assert stream.finish().cleaned_text == "a ["

    def test_oversized_open_fragment_is_released(self, stream):
        text = "[GRAM:" + "x" * (StreamingDecoder.MAX_HELD_CHARS + 10)
        assert stream.feed(text) == text

    def test_feed_after_finish_raises(self, stream):
        stream.finish()
        with pytest.raises(RuntimeError):
            stream.feed("more")

    def test_error_log_streamed_line_by_line(self, stream):
        lines = [
            "Close!\n",
            "[ERROR_LOG]\n",
            "type: vocabulary\n",
            "student_said: \"قلم\"\n",
            "correction: \"كتاب\"\n",
            "[/ERROR_LOG]\n",
            "Try once more.",
        ]
        shown = "".join(stream.feed(line) for line in lines) + stream.flush()
        result = stream.finish()

        assert shown == "Close!\nTry once more."
        assert result.observations[0].correct_answer == "كتاب"
