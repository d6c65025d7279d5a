"""Normalize worker stdout into plain response text."""

from __future__ import annotations

import json
from typing import Any, Callable, Optional


class StreamJsonCollector:
    """Consume a `stream-json` event stream line by line.

    Only lines starting with ``{`` are treated as events:

    - ``assistant`` events contribute their ``text`` content items to the
      response and are forwarded to ``on_text`` as they arrive.
    - ``result`` events are kept in the full transcript only, since they repeat
      the response along with run metadata.
    - ``error`` events are collected into :attr:`stream_error`.

    Any other line (verbose logging, malformed JSON) lands in the transcript.
    """

    def __init__(self, on_text: Optional[Callable[[str], None]] = None):
        self.on_text = on_text
        self._text_parts: list[str] = []
        self._full_parts: list[str] = []
        self._error_parts: list[str] = []

    def feed_line(self, line: str) -> None:
        stripped = line.rstrip("\r\n")
        self._full_parts.append(stripped)
        if not stripped.startswith("{"):
            return
        try:
            event: Any = json.loads(stripped)
        except json.JSONDecodeError:
            return
        if not isinstance(event, dict):
            return

        kind = event.get("type")
        if kind == "assistant":
            message = event.get("message") if isinstance(event.get("message"), dict) else {}
            content = message.get("content")
            for item in content if isinstance(content, list) else []:
                if not isinstance(item, dict) or item.get("type") != "text":
                    continue
                text = item.get("text")
                if isinstance(text, str) and text:
                    self._text_parts.append(text)
                    if self.on_text is not None:
                        self.on_text(text)
        elif kind == "result":
            result = event.get("result")
            if isinstance(result, str) and result:
                self._full_parts.append(result)
        elif kind == "error":
            error = event.get("error") if isinstance(event.get("error"), dict) else {}
            for key in ("message", "type"):
                value = error.get(key)
                if isinstance(value, str) and value:
                    self._error_parts.append(value)

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def transcript(self) -> str:
        return "\n".join(self._full_parts)

    @property
    def stream_error(self) -> str:
        return " ".join(self._error_parts)

    def response_text(self, stderr_text: str = "") -> str:
        """Return the assistant text, or the raw transcript when there was none."""
        if self.text:
            return self.text
        transcript = self.transcript
        if stderr_text.strip():
            transcript = f"{transcript}\nSTDERR: {stderr_text.strip()}" if transcript else f"STDERR: {stderr_text.strip()}"
        return transcript
