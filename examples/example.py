"""Example: Basic chdbffi usage.

Point the binding at a libchdb build:
    CHDB_LIB_PATH=/path/to/libchdb.so python example.py
"""

import os
import tempfile
import chdbffi


def main():
    # Stateless one-shot query.
    result = chdbffi.query("SELECT version(), 1 + 1", "CSV")
    print(f"One-shot: {result.text.strip()}  ({result.stats.elapsed:.4f}s)")

    # Persistent session backed by a directory.
    db_path = os.path.join(tempfile.gettempdir(), "chdbffi_example")

    with chdbffi.connect(f"file:{db_path}") as conn:
        conn.query("CREATE DATABASE IF NOT EXISTS demo")
        conn.query("""
            CREATE TABLE IF NOT EXISTS demo.users (
                id    UInt32,
                name  String,
                email String
            ) ENGINE = MergeTree ORDER BY id
        """)
        conn.query("TRUNCATE TABLE demo.users")
        conn.query("""
            INSERT INTO demo.users VALUES
                (1, 'Alice', 'alice@example.com'),
                (2, 'Bob',   'bob@example.com'),
                (3, 'Carol', 'carol@example.com')
        """)

        result = conn.query("SELECT id, name, email FROM demo.users ORDER BY id", "JSONEachRow")
        print("All users:")
        for line in result.text.splitlines():
            print(f"  {line}")

        # Streaming a large result in chunks.
        total = 0
        chunks = 0
        with conn.stream("SELECT number FROM numbers(1000000)") as cursor:
            for chunk in cursor:
                total += chunk.stats.rows_read
                chunks += 1
        print(f"\nStreamed {total:,} rows in {chunks} chunks")

        # Errors carry the engine's message.
        try:
            conn.query("SELECT * FROM demo.missing")
        except chdbffi.QueryError as e:
            print(f"\nExpected error: {e.message.splitlines()[0]}")

    # Read-only reopen.
    with chdbffi.connect(f"file:{db_path}?mode=ro") as conn:
        count = conn.query("SELECT count() FROM demo.users").text.strip()
        print(f"\nUsers (read-only session): {count}")

    print("\nDone.")


if __name__ == "__main__":
    main()
