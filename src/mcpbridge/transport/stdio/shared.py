import json
from typing import Any


def parse_json_message(line: str) -> dict[str, Any] | None:
    """Parse one framed line as a JSON-RPC message.

    Args:
        line: One line of server stdout, without its terminator

    Returns:
        Parsed message dict, or None if the line is blank, invalid JSON, or
        not a JSON object
    """
    line = line.strip()
    if not line:
        return None

    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(message, dict):
        return None
    return message


def serialize_message(message: dict[str, Any]) -> bytes:
    """Frame a message as one newline-terminated UTF-8 JSON line.

    Raises:
        ValueError: If the message cannot be serialized
    """
    try:
        json_str = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize message to JSON: {e}") from e
    return (json_str + "\n").encode("utf-8")


class LineBuffer:
    """Reassembles newline-delimited lines from arbitrarily sized chunks."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return every line it completed."""
        self._buffer.extend(chunk)
        lines: list[str] = []
        while True:
            index = self._buffer.find(b"\n")
            if index == -1:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            lines.append(raw.decode("utf-8", errors="replace"))
        return lines

    @property
    def pending(self) -> bytes:
        """Bytes received after the last newline."""
        return bytes(self._buffer)
