"""
Incremental newline-delimited JSON line splitting.
"""

import codecs

from mocolamma.core.exceptions import LineDecodeError


class LineBuffer:
    """
    Accumulates raw byte chunks of one stream and hands out complete lines.

    The trailing segment after the last newline is held back until more data
    arrives. Decoding is incremental, so a UTF-8 character split across two
    chunks is reassembled rather than rejected.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Incomplete tail retained from previous chunks."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """
        Append a chunk and return every line it completed.

        Empty segments are kept; callers skip blank lines themselves.

        Args:
            chunk: Raw bytes received from the network

        Returns:
            list[str]: Complete lines, without their newline

        Raises:
            LineDecodeError: If the bytes are not valid text
        """
        try:
            text = self._decoder.decode(chunk)
        except UnicodeDecodeError as e:
            raise LineDecodeError(
                f"Could not decode received data as UTF-8 string: {e}", payload=chunk
            ) from e

        self._buffer += text
        lines = self._buffer.split("\n")

        if self._buffer.endswith("\n"):
            # Trailing empty segment after the final newline
            lines.pop()
            self._buffer = ""
        else:
            self._buffer = lines.pop()

        return lines

    def flush(self) -> str:
        """
        Return and clear the retained tail at the end of the stream.

        Raises:
            LineDecodeError: If the stream ended inside a multi-byte character
        """
        try:
            tail = self._buffer + self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise LineDecodeError(f"Stream ended with incomplete text: {e}") from e
        finally:
            self._buffer = ""
            self._decoder.reset()
        return tail

    def reset(self) -> None:
        self._buffer = ""
        self._decoder.reset()
