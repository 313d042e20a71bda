# src/daymon/sidecar/sse.py

from __future__ import annotations

"""Incremental Server-Sent-Events parser (host side of GET /events)."""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SSEFrame:
    event: str
    data: str


class SSEParser:
    """
    Feed arbitrary text chunks, get complete frames back.

    Frames are separated by a blank line. Comment-only frames (":") are
    dropped. Multiple data lines are joined with "\\n". A frame without an
    explicit event name gets "message".
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[SSEFrame]:
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        frames: list[SSEFrame] = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            frame = self._parse(raw)
            if frame is not None:
                frames.append(frame)
        return frames

    def reset(self) -> None:
        self._buffer = ""

    @staticmethod
    def _parse(raw: str) -> SSEFrame | None:
        event = "message"
        data: list[str] = []
        for line in raw.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                event = value
            elif field == "data":
                data.append(value)
        if not data:
            return None
        return SSEFrame(event=event, data="\n".join(data))
