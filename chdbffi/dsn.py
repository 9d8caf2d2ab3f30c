import logging
import os
from urllib.parse import parse_qsl

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

# Bare "--" on the engine command line; everything after it is a config override.
SEPARATOR = "--"

UDF_PATH = "udf_path"

# DSN keys with a defined effect on the engine arguments.
# Anything else is forwarded as --key[=value] but logged.
KNOWN_PARAMS = frozenset({
    "mode",
    SEPARATOR,
    "user_scripts_path",
    "user_defined_executable_functions_config",
    "verbose",
    "log-level",
    "readonly",
})

def parse_connection_string(dsn):
    """
    Split a DSN into ``(path, params)``.

    Accepted forms::

        ""  or  ":memory:"           in-memory session
        "test.db"                    relative path, made absolute against the cwd
        "file:test.db"
        "file:///tmp/chdb"           absolute path
        "/tmp/chdb?mode=ro"          query parameters
        "db?udf_path=/opt/udf"       expands into the UDF config overrides

    Malformed query fragments are dropped, never raised on.
    """
    params = {}

    if not dsn or dsn == MEMORY:
        return MEMORY, params

    if dsn.startswith("file:"):
        dsn = dsn[5:]
        if dsn.startswith("///"):
            dsn = dsn[2:]

    query_pos = dsn.find("?")
    if query_pos != -1:
        # Later duplicates overwrite earlier ones.
        for key, value in parse_qsl(dsn[query_pos + 1:], keep_blank_values=True):
            params[key] = value

        udf_path = params.pop(UDF_PATH, None)
        if udf_path:
            params[SEPARATOR] = ""
            params["user_scripts_path"] = udf_path
            params["user_defined_executable_functions_config"] = f"{udf_path}/*.xml"

        dsn = dsn[:query_pos]

    if dsn and dsn != MEMORY and not os.path.isabs(dsn):
        dsn = os.path.abspath(dsn)

    # "?mode=ro" with no path segment still means an in-memory session
    return dsn or MEMORY, params

def connect_args(path, params):
    """Engine command line for ``connect_chdb``."""
    args = ["clickhouse"]
    if path != MEMORY:
        args.append(f"--path={path}")

    for key, value in params.items():
        if key not in KNOWN_PARAMS:
            logger.warning("forwarding unrecognized connection parameter %r to the engine", key)

        if key == "mode":
            if value == "ro":
                args.append("--readonly=1")
            elif value != "rw":
                logger.warning("ignoring unknown connection mode %r", value)
        elif key == SEPARATOR:
            args.append(SEPARATOR)
        elif not value:
            args.append(f"--{key}")
        else:
            args.append(f"--{key}={value}")
    return args
