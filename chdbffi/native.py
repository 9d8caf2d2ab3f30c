import ctypes
import logging
import os
import sys
from ctypes import c_int, c_uint64, c_size_t, c_double, c_char_p, c_void_p, POINTER, Structure

logger = logging.getLogger(__name__)

# struct local_result_v2, 64-bit pointers and size_t.
# Field offsets: buf 0, len 8, _vec 16, elapsed 24, rows_read 32,
# bytes_read 40, error_message 48.
class LocalResultV2(Structure):
    _fields_ = [
        ("buf", c_void_p),
        ("len", c_size_t),
        ("_vec", c_void_p),
        ("elapsed", c_double),
        ("rows_read", c_uint64),
        ("bytes_read", c_uint64),
        ("error_message", c_void_p),
    ]

LIB_PATH_ENV = "CHDB_LIB_PATH"

_lib = None

def _candidate_paths():
    if sys.platform == "darwin":
        lib_names = ["libchdb.dylib", "libchdb.so"]
    else:
        lib_names = ["libchdb.so"]

    here = os.path.dirname(os.path.abspath(__file__))
    candidates = []

    # Bundled next to the package, then the working directory (useful in CI/scripts).
    for name in lib_names:
        candidates.append(os.path.join(here, name))
    cwd = os.getcwd()
    for name in lib_names:
        candidates.append(os.path.join(cwd, name))

    # Walk up a few parents from this module's location
    cur_dir = os.path.dirname(here)
    for _ in range(0, 4):
        for name in lib_names:
            candidates.append(os.path.join(cur_dir, name))
        parent = os.path.dirname(cur_dir)
        if parent == cur_dir:
            break
        cur_dir = parent
    return candidates

def load_library(path=None):
    global _lib
    if _lib is not None:
        return _lib

    lib_path = path or os.environ.get(LIB_PATH_ENV)

    if not lib_path:
        for p in _candidate_paths():
            if os.path.exists(p):
                lib_path = p
                break

    if not lib_path:
        raise RuntimeError(f"Could not find the chDB native library. Set {LIB_PATH_ENV} env var.")

    try:
        lib = ctypes.CDLL(lib_path)
    except OSError as e:
        raise RuntimeError(f"Failed to load chDB native library at {lib_path}: {e}")

    _setup_signatures(lib)
    logger.debug("loaded chDB native library from %s", lib_path)
    _lib = lib
    return _lib

def _setup_signatures(lib):
    # query_stable_v2(argc, argv) -> local_result_v2*
    lib.query_stable_v2.argtypes = [c_int, POINTER(c_char_p)]
    lib.query_stable_v2.restype = c_void_p

    lib.free_result_v2.argtypes = [c_void_p]
    lib.free_result_v2.restype = None

    # connect_chdb(argc, argv) -> chdb_conn**
    lib.connect_chdb.argtypes = [c_int, POINTER(c_char_p)]
    lib.connect_chdb.restype = c_void_p

    lib.close_conn.argtypes = [c_void_p]
    lib.close_conn.restype = None

    # query_conn(chdb_conn*, query, format) -> local_result_v2*
    lib.query_conn.argtypes = [c_void_p, c_char_p, c_char_p]
    lib.query_conn.restype = c_void_p

    # Streaming
    lib.query_conn_streaming.argtypes = [c_void_p, c_char_p, c_char_p]
    lib.query_conn_streaming.restype = c_void_p

    lib.chdb_streaming_result_error.argtypes = [c_void_p]
    lib.chdb_streaming_result_error.restype = c_char_p

    lib.chdb_streaming_fetch_result.argtypes = [c_void_p, c_void_p]
    lib.chdb_streaming_fetch_result.restype = c_void_p

    lib.chdb_streaming_cancel_query.argtypes = [c_void_p, c_void_p]
    lib.chdb_streaming_cancel_query.restype = None

    lib.chdb_destroy_result.argtypes = [c_void_p]
    lib.chdb_destroy_result.restype = None

def build_argv(args):
    """
    Build a NULL-terminated ``char**`` table for an (argc, argv) entry point.

    The returned array owns the encoded byte strings, so it must be kept
    referenced until the native call that consumes it has returned.
    """
    encoded = [a.encode("utf-8") for a in args]
    # Slots past the given items stay NULL.
    argv = (c_char_p * (len(encoded) + 1))(*encoded)
    return len(encoded), argv

def deref_pointer(address):
    """Read the pointer stored at ``address`` (e.g. ``chdb_conn*`` out of ``chdb_conn**``)."""
    return c_void_p.from_address(address).value
