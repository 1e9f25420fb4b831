"""JSON Lines documents and the objects that emit and receive them."""

from __future__ import annotations

import json
import sys
from typing import Any, TextIO


class JsonlSink:
    """Receives JSON documents; the base class accepts and drops them."""

    def handle_document(self, doc: Any) -> bool:
        return True


class StdoutJsonlSink(JsonlSink):
    """Writes each document as one compact JSON line."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream

    def handle_document(self, doc: Any) -> bool:
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write(json.dumps(doc, separators=(",", ":"), ensure_ascii=False))
        stream.write("\n")
        stream.flush()
        return True


class JsonlSource:
    """Mixin for objects that produce JSON documents for a connected sink."""

    _jsonl_sink: JsonlSink | None = None

    def connect(self, sink: JsonlSink) -> None:
        self._jsonl_sink = sink

    def feed_document(self, doc: Any) -> bool:
        if self._jsonl_sink is None:
            raise RuntimeError("no JSONL sink connected")
        return self._jsonl_sink.handle_document(doc)