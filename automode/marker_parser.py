"""
Streaming Marker Parser
=======================

Agents signal protocol transitions by writing markers into their free-form
text output:

    [SPEC_GENERATED]           the plan above this line is complete
    [WIZARD_QUESTION]{...}     a clarifying question as a JSON object
    [WIZARD_COMPLETE]          no more questions needed

Text arrives in arbitrary chunks, so a marker (or its JSON payload) may be
split across several chunks. ``MarkerParser`` consumes a growing buffer
incrementally with three states:

    SCANNING        looking for the next '['
    MARKER_OPEN     saw '[', waiting for enough text to confirm a marker
    CAPTURING_JSON  inside a wizard question payload, tracking brace depth

Each ``feed`` returns the markers completed by that chunk, in order.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

_logger = logging.getLogger(__name__)


class Marker(str, Enum):
    SPEC_GENERATED = "[SPEC_GENERATED]"
    WIZARD_QUESTION = "[WIZARD_QUESTION]"
    WIZARD_COMPLETE = "[WIZARD_COMPLETE]"


class ParserState(str, Enum):
    SCANNING = "scanning"
    MARKER_OPEN = "marker_open"
    CAPTURING_JSON = "capturing_json"


@dataclass(frozen=True)
class MarkerEvent:
    """
    A marker found in the stream.

    Attributes:
        marker: Which marker was seen
        position: Offset of the marker's '[' in the full text
        preceding_text: All text before the marker
        payload: Parsed JSON object (wizard questions only)
        error: Why the payload could not be parsed, if it could not
    """

    marker: Marker
    position: int
    preceding_text: str
    payload: dict[str, Any] | None = None
    error: str | None = None


class MarkerParser:
    """Incremental marker scanner over a growing text buffer."""

    def __init__(self, markers: Iterable[Marker] | None = None):
        self.markers = tuple(markers) if markers is not None else tuple(Marker)
        self._text = ""
        self._pos = 0
        self._state = ParserState.SCANNING
        self._marker_start = 0
        self._json_start: int | None = None
        self._depth = 0
        self._in_string = False
        self._escape = False

    @property
    def text(self) -> str:
        return self._text

    @property
    def state(self) -> ParserState:
        return self._state

    def feed(self, chunk: str) -> list[MarkerEvent]:
        self._text += chunk
        events: list[MarkerEvent] = []

        while True:
            if self._state == ParserState.SCANNING:
                idx = self._text.find("[", self._pos)
                if idx == -1:
                    self._pos = len(self._text)
                    break
                self._marker_start = idx
                self._pos = idx
                self._state = ParserState.MARKER_OPEN

            elif self._state == ParserState.MARKER_OPEN:
                if not self._match_marker(events):
                    break

            elif self._state == ParserState.CAPTURING_JSON:
                if not self._capture_json(events):
                    break

        return events

    def finish(self) -> list[MarkerEvent]:
        """Signal end of stream. Reports a wizard payload cut off mid-object."""
        events: list[MarkerEvent] = []
        if self._state == ParserState.CAPTURING_JSON:
            events.append(self._event(
                Marker.WIZARD_QUESTION,
                error="Stream ended before the question JSON was complete",
            ))
        self._state = ParserState.SCANNING
        self._pos = len(self._text)
        return events

    # -------------------------------------------------------------------------
    # States
    # -------------------------------------------------------------------------

    def _match_marker(self, events: list[MarkerEvent]) -> bool:
        """Returns False when more text is needed to decide."""
        candidate = self._text[self._marker_start:]
        waiting = False

        for marker in self.markers:
            token = marker.value
            if candidate.startswith(token):
                end = self._marker_start + len(token)
                if marker == Marker.WIZARD_QUESTION:
                    self._state = ParserState.CAPTURING_JSON
                    self._json_start = None
                    self._depth = 0
                    self._in_string = False
                    self._escape = False
                else:
                    events.append(self._event(marker))
                    self._state = ParserState.SCANNING
                self._pos = end
                return True
            if len(candidate) < len(token) and token.startswith(candidate):
                waiting = True

        if waiting:
            return False

        # Not a marker; resume scanning just past this '['
        self._state = ParserState.SCANNING
        self._pos = self._marker_start + 1
        return True

    def _capture_json(self, events: list[MarkerEvent]) -> bool:
        text = self._text
        i = self._pos

        while i < len(text):
            ch = text[i]

            if self._json_start is None:
                if ch.isspace():
                    i += 1
                    continue
                if ch != "{":
                    events.append(self._event(
                        Marker.WIZARD_QUESTION, error="Expected a JSON object after the marker"
                    ))
                    self._state = ParserState.SCANNING
                    self._pos = i
                    return True
                self._json_start = i
                self._depth = 1
                i += 1
                continue

            if self._in_string:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch == "{":
                self._depth += 1
            elif ch == "}":
                self._depth -= 1
                if self._depth == 0:
                    raw = text[self._json_start:i + 1]
                    events.append(self._decode_question(raw))
                    self._state = ParserState.SCANNING
                    self._pos = i + 1
                    return True
            i += 1

        self._pos = len(text)
        return False

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _decode_question(self, raw: str) -> MarkerEvent:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            _logger.warning("Invalid wizard question JSON: %s", e)
            return self._event(Marker.WIZARD_QUESTION, error=f"Invalid JSON: {e}")
        if not isinstance(payload, dict):
            return self._event(Marker.WIZARD_QUESTION, error="Question payload is not an object")
        return self._event(Marker.WIZARD_QUESTION, payload=payload)

    def _event(
        self,
        marker: Marker,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> MarkerEvent:
        return MarkerEvent(
            marker=marker,
            position=self._marker_start,
            preceding_text=self._text[:self._marker_start],
            payload=payload,
            error=error,
        )


def find_markers(text: str, markers: Iterable[Marker] | None = None) -> list[MarkerEvent]:
    """Scan a complete text in one pass."""
    parser = MarkerParser(markers)
    return parser.feed(text) + parser.finish()
