"""Span classifier: splits streamed model text into answer and reasoning.

Models are instructed to reason inside ``<thinking>...</thinking>`` before
answering. The classifier tags every piece of text outside a marker pair
as an answer span and every piece between an opening marker and the next
closing marker as a reasoning span. Markers themselves are never emitted.

The state machine is a pure function over an immutable state so it can be
driven by the async pipeline and tested without one:

    state = ClassifierState()
    for delta in deltas:
        state, spans = step(state, delta)
    spans = flush(state)

A marker may straddle delta boundaries. When the text seen so far ends in
a proper prefix of the marker being watched for, that suffix is withheld
in ``pending`` until the next delta settles it.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass
from enum import StrEnum

from chatrelay.errors import UpstreamError
from chatrelay.schemas.streaming import SpanKind, TaggedSpan

logger = logging.getLogger(__name__)


class ClassifierMode(StrEnum):
    VISIBLE = "visible"
    REASONING = "reasoning"


@dataclass(frozen=True)
class Markers:
    """The literal opening and closing markers of a reasoning region."""

    open: str = "<thinking>"
    close: str = "</thinking>"

    def watched(self, mode: ClassifierMode) -> str:
        return self.open if mode is ClassifierMode.VISIBLE else self.close


DEFAULT_MARKERS = Markers()


@dataclass(frozen=True)
class ClassifierState:
    """Classifier position between two deltas.

    Attributes:
        mode: Whether text is currently visible or inside a reasoning region.
        pending: Withheld text; always a proper prefix of the marker watched
                 for in ``mode``.
    """

    mode: ClassifierMode = ClassifierMode.VISIBLE
    pending: str = ""


def _kind_for(mode: ClassifierMode) -> SpanKind:
    return SpanKind.ANSWER if mode is ClassifierMode.VISIBLE else SpanKind.REASONING


def _partial_marker_length(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``marker``."""
    for n in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:n]):
            return n
    return 0


def step(
    state: ClassifierState,
    delta: str,
    markers: Markers = DEFAULT_MARKERS,
) -> tuple[ClassifierState, list[TaggedSpan]]:
    """Consume one delta.

    Returns:
        The next state and the spans that can be emitted now, in order.
        Spans are never empty.
    """
    buffer = state.pending + delta
    mode = state.mode
    spans: list[TaggedSpan] = []

    while True:
        marker = markers.watched(mode)
        index = buffer.find(marker)
        if index == -1:
            break
        if index:
            spans.append(TaggedSpan(kind=_kind_for(mode), text=buffer[:index]))
        buffer = buffer[index + len(marker):]
        mode = ClassifierMode.REASONING if mode is ClassifierMode.VISIBLE else ClassifierMode.VISIBLE

    held = _partial_marker_length(buffer, markers.watched(mode))
    emit = buffer[: len(buffer) - held]
    if emit:
        spans.append(TaggedSpan(kind=_kind_for(mode), text=emit))

    return ClassifierState(mode=mode, pending=buffer[len(buffer) - held:]), spans


def flush(state: ClassifierState) -> list[TaggedSpan]:
    """Release withheld text at end of stream, tagged by the final mode.

    Text inside a reasoning region that was never closed stays reasoning.
    """
    if not state.pending:
        return []
    return [TaggedSpan(kind=_kind_for(state.mode), text=state.pending)]


async def classify(
    deltas: AsyncIterable[str],
    markers: Markers = DEFAULT_MARKERS,
) -> AsyncIterator[TaggedSpan]:
    """Classify a live delta sequence.

    If the delta source fails with UpstreamError, withheld text is
    flushed before the error propagates so the caller can keep the
    partial answer.
    """
    state = ClassifierState()
    try:
        async for delta in deltas:
            state, spans = step(state, delta, markers)
            for span in spans:
                yield span
    except UpstreamError:
        for span in flush(state):
            yield span
        raise

    for span in flush(state):
        yield span

    if state.mode is ClassifierMode.REASONING:
        logger.debug("Stream ended inside an unclosed reasoning region")


def split_text(chunks: Iterable[str], markers: Markers = DEFAULT_MARKERS) -> list[TaggedSpan]:
    """Classify already-received text chunks in one call."""
    state = ClassifierState()
    spans: list[TaggedSpan] = []
    for chunk in chunks:
        state, emitted = step(state, chunk, markers)
        spans.extend(emitted)
    spans.extend(flush(state))
    return spans


def merge_spans(spans: Iterable[TaggedSpan]) -> list[TaggedSpan]:
    """Coalesce adjacent spans of the same kind into maximal runs."""
    merged: list[TaggedSpan] = []
    for span in spans:
        if merged and merged[-1].kind is span.kind:
            merged[-1] = TaggedSpan(kind=span.kind, text=merged[-1].text + span.text)
        else:
            merged.append(span)
    return merged


def answer_text(spans: Iterable[TaggedSpan]) -> str:
    """Join the answer spans. Reasoning is never part of the stored answer."""
    return "".join(span.text for span in spans if span.kind is SpanKind.ANSWER)
