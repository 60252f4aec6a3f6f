import json
import logging
import re
from typing import Any, Dict, Iterator, Optional

# The base protocol consists of a header and a content part (comparable to HTTP).
# The header and content part are separated by a '\r\n'.
#
# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#baseProtocol
kHEADER_TERMINATOR = b"\r\n\r\n"

kCONTENT_LENGTH = re.compile(rb"^Content-Length:\s*(\d+)\s*$", re.IGNORECASE | re.MULTILINE)


def encode(message: Dict[str, Any]) -> bytes:
    """
    Returns `message` framed for the wire: a Content-Length header and the JSON content.

    Content-Length counts bytes of the UTF-8 encoded content, not characters.
    """
    content = json.dumps(message).encode("utf-8")

    header = f"Content-Length: {len(content)}\r\n\r\n"

    return header.encode("ascii") + content


class MessageBuffer:
    """
    Decodes a byte stream into JSON-RPC messages.

    Bytes are fed as they arrive, in chunks of any size; a message is produced
    once its header and its whole content are buffered. State carries over
    between calls, so a message split across chunks is decoded when its last
    byte arrives.

    A malformed frame never raises: a header without Content-Length is dropped
    up to its terminator, and content that isn't a JSON object is dropped.
    """

    def __init__(self, logger: logging.Logger, name: str = ""):
        self._logger = logger
        self._name = name
        self._buffer = bytearray()
        self._expected_length: Optional[int] = None

    def __len__(self):
        return len(self._buffer)

    def feed(self, data: bytes) -> Iterator[Dict[str, Any]]:
        """
        Buffers `data` and returns the messages it completes.

        `data` is buffered even if the result is never iterated.
        """
        self._buffer.extend(data)

        return self._messages()

    def _messages(self) -> Iterator[Dict[str, Any]]:
        while True:
            # -- HEADER

            if self._expected_length is None:
                index = self._buffer.find(kHEADER_TERMINATOR)

                if index == -1:
                    return

                header = bytes(self._buffer[:index])

                del self._buffer[: index + len(kHEADER_TERMINATOR)]

                if match := kCONTENT_LENGTH.search(header):
                    self._expected_length = int(match.group(1))
                else:
                    self._logger.error(
                        f"[{self._name}] Dropped frame without Content-Length: {header!r}"
                    )
                    continue

            # -- CONTENT

            if len(self._buffer) < self._expected_length:
                return

            content = bytes(self._buffer[: self._expected_length])

            del self._buffer[: self._expected_length]

            self._expected_length = None

            try:
                message = json.loads(content.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                self._logger.error(f"[{self._name}] Failed to decode message: {content!r}")
                continue

            if not isinstance(message, dict):
                self._logger.error(f"[{self._name}] Dropped non-object message: {message!r}")
                continue

            yield message
