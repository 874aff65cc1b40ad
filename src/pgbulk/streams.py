import io
import tempfile
import threading
from enum import Enum
from typing import Any, Optional

"""File-like endpoints handed to ``cursor.copy_expert``.

psycopg2 drives a COPY by calling ``write()`` on the sink (COPY TO) or
``read()`` on the source (COPY FROM). Both endpoints keep an explicit,
sticky state so the outcome is decided at the completion point:

    PENDING --fail()--> ERRORED
    PENDING --finish()--> ENDED

Once ERRORED, a later ``finish()`` raises the recorded error instead of
ending cleanly, whatever order the signals arrived in.
"""

DEFAULT_SPOOL_MAX_BYTES = 8 * 1024 * 1024
DEFAULT_CHUNK_SIZE = 8192
NEWLINE = b"\n"


class StreamState(str, Enum):
    PENDING = "pending"
    ERRORED = "errored"
    ENDED = "ended"


class StreamDestroyed(IOError):
    """I/O attempted on an endpoint that has been torn down."""


class _CopyEndpoint:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = StreamState.PENDING
        self._error: Optional[BaseException] = None
        self.destroyed = False

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def fail(self, exc: BaseException) -> None:
        """Records the first error seen; later ones are dropped."""
        with self._lock:
            if self._state is StreamState.PENDING:
                self._state = StreamState.ERRORED
                self._error = exc

    def destroy(self, exc: Optional[BaseException] = None) -> None:
        self.fail(exc or StreamDestroyed("stream destroyed"))
        self.destroyed = True

    def finish(self) -> None:
        with self._lock:
            if self._state is StreamState.PENDING:
                self._state = StreamState.ENDED
                return
            error = self._error
        if error is not None:
            raise error

    def _check_open(self) -> None:
        if self.destroyed:
            raise StreamDestroyed("stream destroyed")


class ExportSink(_CopyEndpoint):
    """
    Collects COPY TO output, counting newline-terminated records as the
    chunks arrive.

    Data is spooled in memory up to ``max_memory`` bytes and then spills to
    an anonymous temporary file.
    """

    def __init__(self, max_memory: int = DEFAULT_SPOOL_MAX_BYTES):
        super().__init__()
        self._buffer = tempfile.SpooledTemporaryFile(max_size=max_memory)
        self.byte_size = 0
        self.line_count = 0

    def write(self, chunk: Any) -> int:
        self._check_open()
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer.write(chunk)
        self.byte_size += len(chunk)
        self.line_count += chunk.count(NEWLINE)
        return len(chunk)

    def row_count(self, include_header: bool) -> int:
        if include_header and self.line_count > 0:
            return self.line_count - 1
        return self.line_count

    def getvalue(self) -> bytes:
        self._buffer.seek(0)
        return self._buffer.read()

    def close(self) -> None:
        self._buffer.close()


class ImportSource(_CopyEndpoint):
    """Feeds a payload to COPY FROM in the chunk sizes psycopg2 asks for."""

    def __init__(self, payload: bytes):
        super().__init__()
        self._reader = io.BytesIO(payload)
        self.bytes_read = 0

    def read(self, size: int = DEFAULT_CHUNK_SIZE) -> bytes:
        self._check_open()
        if self._error is not None:
            raise self._error
        chunk = self._reader.read(size)
        self.bytes_read += len(chunk)
        return chunk

    def close(self) -> None:
        self._reader.close()
