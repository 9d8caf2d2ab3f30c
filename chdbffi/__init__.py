from .native import load_library, build_argv, deref_pointer, LocalResultV2
from .dsn import parse_connection_string, connect_args, MEMORY
from .finalizer import supervisor
import contextlib
import ctypes
import dataclasses
import enum
import logging
import weakref

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

# Exceptions
class ChdbError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message

class ConnectionError(ChdbError):
    pass

class QueryError(ChdbError):
    pass

class StreamingError(QueryError):
    pass

@dataclasses.dataclass(frozen=True)
class QueryStats:
    elapsed: float
    rows_read: int
    bytes_read: int

@dataclasses.dataclass(frozen=True)
class QueryResult:
    data: bytes
    stats: QueryStats

    @property
    def text(self):
        return self.data.decode("utf-8", errors="replace")

    def __bytes__(self):
        return self.data

    def __len__(self):
        return len(self.data)

def _message(raw):
    # Be defensive: native messages should be UTF-8, but don't crash if not.
    return raw.decode("utf-8", errors="replace")

@contextlib.contextmanager
def _result_block(lib, ptr):
    """Borrow a ``local_result_v2*``; it is freed exactly once however the block exits."""
    try:
        yield LocalResultV2.from_address(ptr)
    finally:
        lib.free_result_v2(ptr)

def _decode_block(block, error_cls=QueryError):
    # Error field first: on failure the data fields are never touched.
    if block.error_message:
        raise error_cls(_message(ctypes.string_at(block.error_message)))

    # The payload is not NUL-terminated, always copy by length.
    if block.buf and block.len:
        data = ctypes.string_at(block.buf, block.len)
    else:
        data = b""
    stats = QueryStats(
        elapsed=float(block.elapsed),
        rows_read=int(block.rows_read),
        bytes_read=int(block.bytes_read),
    )
    return QueryResult(data, stats)

def _decode_result(lib, ptr, error_cls=QueryError):
    with _result_block(lib, ptr) as block:
        return _decode_block(block, error_cls)

def query(sql, format="CSV"):
    """
    Run ``sql`` in a fresh, stateless engine session.

    >>> query("select 123").data
    b'123\\n'
    """
    lib = load_library()
    argc, argv = build_argv([
        "clickhouse",
        "--multiquery",
        f"--output-format={format}",
        f"--query={sql}",
    ])
    res = lib.query_stable_v2(argc, argv)
    if not res:
        raise QueryError("chDB call failed to return a result structure (null pointer).")
    return _decode_result(lib, res)

class StreamState(enum.Enum):
    INIT = "init"
    STREAMING = "streaming"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    ERRORED = "errored"

_TERMINAL = frozenset({StreamState.EXHAUSTED, StreamState.CANCELLED, StreamState.ERRORED})

def _release_stream(lib, conn_ptr, stream_ptr):
    try:
        lib.chdb_streaming_cancel_query(conn_ptr, stream_ptr)
    finally:
        lib.chdb_destroy_result(stream_ptr)

def _close_connection(lib, handle):
    lib.close_conn(handle)

class StreamingCursor:
    """
    Chunked reader over a streaming query, created by :meth:`Connection.stream`.

    Each :meth:`fetch` pulls one chunk from the engine. The stream ends in one
    of three terminal states: EXHAUSTED (all chunks read), ERRORED (the engine
    reported an error, raised as :class:`StreamingError`) or CANCELLED
    (:meth:`cancel`/:meth:`close`, or leaving a ``with`` block or ``for``
    loop early). The
    native stream is cancelled and destroyed once, on entering whichever
    terminal state comes first. The parent connection handle is borrowed and
    never released here.

    Calls on one cursor must not overlap.
    """

    def __init__(self, connection, conn_ptr, stream_ptr):
        self._state = StreamState.INIT
        self._connection = connection
        self._lib = connection._lib
        self._conn_ptr = conn_ptr
        self._stream = stream_ptr
        self._token = supervisor.register(
            self, _release_stream, self._lib, conn_ptr, stream_ptr,
            keepalive=connection,
        )
        self._state = StreamState.STREAMING

    @property
    def state(self):
        return self._state

    @property
    def closed(self):
        return self._state in _TERMINAL

    def fetch(self):
        """Return the next chunk as a :class:`QueryResult`, or ``None`` once the stream has ended."""
        if self._state is not StreamState.STREAMING:
            return None

        lib = self._lib
        try:
            error = lib.chdb_streaming_result_error(self._stream)
            if error:
                raise StreamingError(_message(error))

            chunk = lib.chdb_streaming_fetch_result(self._conn_ptr, self._stream)
            if not chunk:
                error = lib.chdb_streaming_result_error(self._stream)
                if error:
                    raise StreamingError(_message(error))
                result = None
            else:
                with _result_block(lib, chunk) as block:
                    result = _decode_block(block, StreamingError)
                    # A chunk without a payload marks the end of the stream.
                    if not block.buf:
                        result = None
        except BaseException:
            self._finish(StreamState.ERRORED)
            raise

        if result is None:
            self._finish(StreamState.EXHAUSTED)
        return result

    def cancel(self):
        """Stop the stream early. No-op once a terminal state was reached."""
        if self._state is StreamState.STREAMING:
            self._finish(StreamState.CANCELLED)

    close = cancel

    def _finish(self, state):
        if self._stream is None:
            return
        supervisor.unregister(self._token)
        stream, self._stream = self._stream, None
        self._state = state
        logger.debug("stream %#x finished: %s", stream, state.value)
        try:
            _release_stream(self._lib, self._conn_ptr, stream)
        finally:
            self._connection._cursors.discard(self)

    def __iter__(self):
        # Leaving a for loop early drops this generator, which cancels the stream.
        try:
            while True:
                result = self.fetch()
                if result is None:
                    return
                yield result
        finally:
            self.close()

    def __next__(self):
        result = self.fetch()
        if result is None:
            raise StopIteration
        return result

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"<StreamingCursor state={self._state.value}>"

class Connection:
    """
    A persistent engine session.

    ``dsn`` is ``":memory:"`` (default), a directory path, or a ``file:`` URI
    with optional query parameters, see :func:`parse_connection_string`.
    Sessions opened on ``":memory:"`` are independent of each other.

    Close explicitly (or use ``with``). A connection that is dropped unclosed
    is released when the garbage collector gets to it, with a ResourceWarning.
    """

    def __init__(self, dsn=MEMORY):
        self._lib = load_library()
        self.path, self.params = parse_connection_string(dsn)
        self._handle = None
        self._cursors = weakref.WeakSet()

        argc, argv = build_argv(connect_args(self.path, self.params))
        handle = self._lib.connect_chdb(argc, argv)
        if not handle:
            raise ConnectionError(f"Failed to connect to chDB connection at path: {self.path}")

        self._handle = handle
        self._token = supervisor.register(self, _close_connection, self._lib, handle)
        logger.debug("opened chDB connection at %s", self.path)

    @property
    def closed(self):
        return self._handle is None

    def _conn_ptr(self):
        if self._handle is None:
            raise ConnectionError("Connection is closed")
        ptr = deref_pointer(self._handle)
        if not ptr:
            raise ConnectionError("Invalid connection pointer. The connection might be corrupted or closed.")
        return ptr

    def query(self, sql, format="CSV"):
        conn_ptr = self._conn_ptr()
        res = self._lib.query_conn(conn_ptr, sql.encode("utf-8"), format.encode("utf-8"))
        if not res:
            raise QueryError("chDB call failed to return a result structure (null pointer).")
        return _decode_result(self._lib, res)

    def stream(self, sql, format="CSV"):
        """
        Start a streaming query and return a :class:`StreamingCursor` over its chunks::

            with conn.stream("SELECT * FROM numbers(1000000)") as cursor:
                for chunk in cursor:
                    ...
        """
        conn_ptr = self._conn_ptr()
        stream = self._lib.query_conn_streaming(conn_ptr, sql.encode("utf-8"), format.encode("utf-8"))
        if not stream:
            raise StreamingError("Failed to initiate chDB streaming query.")
        try:
            cursor = StreamingCursor(self, conn_ptr, stream)
        except BaseException:
            _release_stream(self._lib, conn_ptr, stream)
            raise
        self._cursors.add(cursor)
        return cursor

    def close(self):
        if self._handle is None:
            return
        # Streams borrow the connection; they go first.
        for cursor in list(self._cursors):
            cursor.cancel()
        supervisor.unregister(self._token)
        handle, self._handle = self._handle, None
        self._lib.close_conn(handle)
        logger.debug("closed chDB connection at %s", self.path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"<Connection path={self.path!r} closed={self.closed}>"

def connect(dsn=MEMORY):
    return Connection(dsn)

__all__ = [
    "__version__",
    "query",
    "connect",
    "Connection",
    "StreamingCursor",
    "StreamState",
    "QueryResult",
    "QueryStats",
    "parse_connection_string",
    "ChdbError",
    "ConnectionError",
    "QueryError",
    "StreamingError",
]
