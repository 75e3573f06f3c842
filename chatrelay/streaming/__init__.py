"""Streaming completion pipeline.

decoder:    provider bytes -> content deltas
classifier: content deltas -> answer/reasoning spans
channel:    bounded outbound event queue for one client
publisher:  spans -> outbound events, then answer persistence
"""

from chatrelay.streaming.channel import EventChannel
from chatrelay.streaming.classifier import (
    ClassifierMode,
    ClassifierState,
    Markers,
    answer_text,
    classify,
    flush,
    merge_spans,
    split_text,
    step,
)
from chatrelay.streaming.decoder import extract_delta, iter_deltas
from chatrelay.streaming.publisher import EventPublisher

__all__ = [
    "ClassifierMode",
    "ClassifierState",
    "EventChannel",
    "EventPublisher",
    "Markers",
    "answer_text",
    "classify",
    "extract_delta",
    "flush",
    "iter_deltas",
    "merge_spans",
    "split_text",
    "step",
]
