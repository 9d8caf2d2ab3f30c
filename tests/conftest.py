import collections
import ctypes
import re

import pytest

import chdbffi
from chdbffi import native
from chdbffi.native import LocalResultV2


class FakeStream:
    def __init__(self, chunks):
        self.chunks = collections.deque(chunks)
        self.error = None
        self.destroyed = False


class FakeChdb:
    """
    In-process stand-in for libchdb with the same ten entry points.

    Result blocks are real ``local_result_v2`` structs allocated through ctypes,
    so the decoder reads them exactly as it would native memory. Every call is
    recorded in ``calls`` as ``(name, args)``; freeing or destroying a handle
    twice fails the test.
    """

    def __init__(self):
        self.calls = []
        self.connect_argv = []
        self.fail_connect = False
        # sql -> list of chunk specs: (data, rows), ("error", msg) or "null-buf"
        self.streams = {}
        self._blocks = {}
        self._conns = {}
        self._streams = {}

    # helpers

    def make_block(self, data=b"", rows_read=0, bytes_read=0, elapsed=0.0, error=None, null_buf=False):
        block = LocalResultV2()
        keep = [block]
        if not null_buf:
            buf = ctypes.create_string_buffer(data, len(data))
            keep.append(buf)
            block.buf = ctypes.addressof(buf)
        block.len = len(data)
        block._vec = None
        block.elapsed = elapsed
        block.rows_read = rows_read
        block.bytes_read = bytes_read if bytes_read else len(data)
        if error is not None:
            msg = ctypes.create_string_buffer(error.encode("utf-8"))
            keep.append(msg)
            block.error_message = ctypes.addressof(msg)
        addr = ctypes.addressof(block)
        self._blocks[addr] = keep
        return addr

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)

    def names(self):
        return [call for call, _ in self.calls]

    @property
    def live_blocks(self):
        return len(self._blocks)

    def _respond(self, sql):
        sql = sql.strip()
        m = re.fullmatch(r"(?i)select\s+(\d+)", sql)
        if m:
            data = (m.group(1) + "\n").encode()
            return self.make_block(data, rows_read=1, elapsed=0.001)
        if sql.startswith("null"):
            return None
        if sql.startswith("fail:"):
            return self.make_block(b"garbage", error=sql[5:].strip())
        return self.make_block(b"", rows_read=0)

    def conn_cell(self, handle):
        return self._conns[handle][0]

    def _conn_ptr_to_handle(self, conn_ptr):
        for handle, (cell, _) in self._conns.items():
            if cell.value == conn_ptr:
                return handle
        raise AssertionError(f"unknown connection pointer {conn_ptr!r}")

    # entry points

    def query_stable_v2(self, argc, argv):
        args = [argv[i].decode("utf-8") for i in range(argc)]
        assert argv[argc] is None
        self.calls.append(("query_stable_v2", args))
        sql = next(a[len("--query="):] for a in args if a.startswith("--query="))
        return self._respond(sql)

    def free_result_v2(self, ptr):
        self.calls.append(("free_result_v2", ptr))
        assert ptr in self._blocks, "result block freed twice or never allocated"
        del self._blocks[ptr]

    def connect_chdb(self, argc, argv):
        args = [argv[i].decode("utf-8") for i in range(argc)]
        assert argv[argc] is None
        self.calls.append(("connect_chdb", args))
        self.connect_argv.append(args)
        if self.fail_connect:
            return None
        target = ctypes.create_string_buffer(8)
        cell = ctypes.c_void_p(ctypes.addressof(target))
        handle = ctypes.addressof(cell)
        self._conns[handle] = (cell, target)
        return handle

    def close_conn(self, handle):
        self.calls.append(("close_conn", handle))
        cell = self.conn_cell(handle)
        assert cell.value, "connection closed twice"
        cell.value = None

    def query_conn(self, conn_ptr, sql, fmt):
        self._conn_ptr_to_handle(conn_ptr)
        self.calls.append(("query_conn", (sql.decode("utf-8"), fmt.decode("utf-8"))))
        return self._respond(sql.decode("utf-8"))

    def query_conn_streaming(self, conn_ptr, sql, fmt):
        self._conn_ptr_to_handle(conn_ptr)
        sql = sql.decode("utf-8")
        self.calls.append(("query_conn_streaming", (sql, fmt.decode("utf-8"))))
        if sql not in self.streams:
            return None
        stream = FakeStream(self.streams[sql])
        addr = id(stream)
        self._streams[addr] = stream
        return addr

    def chdb_streaming_result_error(self, stream_ptr):
        self.calls.append(("chdb_streaming_result_error", stream_ptr))
        stream = self._streams[stream_ptr]
        return stream.error.encode("utf-8") if stream.error else None

    def chdb_streaming_fetch_result(self, conn_ptr, stream_ptr):
        self.calls.append(("chdb_streaming_fetch_result", stream_ptr))
        stream = self._streams[stream_ptr]
        assert not stream.destroyed
        if not stream.chunks:
            return None
        spec = stream.chunks.popleft()
        if spec == "null-buf":
            return self.make_block(null_buf=True)
        if spec[0] == "error":
            stream.error = spec[1]
            return None
        if spec[0] == "block-error":
            return self.make_block(b"partial", error=spec[1])
        data, rows = spec
        return self.make_block(data, rows_read=rows)

    def chdb_streaming_cancel_query(self, conn_ptr, stream_ptr):
        self.calls.append(("chdb_streaming_cancel_query", stream_ptr))
        assert not self._streams[stream_ptr].destroyed

    def chdb_destroy_result(self, stream_ptr):
        self.calls.append(("chdb_destroy_result", stream_ptr))
        stream = self._streams[stream_ptr]
        assert not stream.destroyed, "stream destroyed twice"
        stream.destroyed = True


@pytest.fixture
def fake_lib(monkeypatch):
    lib = FakeChdb()
    monkeypatch.setattr(native, "_lib", lib)
    return lib


@pytest.fixture
def real_lib(monkeypatch):
    monkeypatch.setattr(native, "_lib", None)
    try:
        return native.load_library()
    except RuntimeError as e:
        pytest.skip(f"chDB native library not available: {e}")


@pytest.fixture
def conn(fake_lib):
    c = chdbffi.Connection(":memory:")
    yield c
    c.close()
