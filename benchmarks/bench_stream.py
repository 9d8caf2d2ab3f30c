import chdbffi
import time

def run_benchmark():
    count = 5_000_000
    sql = f"SELECT number, toString(number), number * 1.5 FROM numbers({count})"

    conn = chdbffi.connect(":memory:")

    print("Benchmarking one-shot query()...")
    start_time = time.perf_counter()
    result = chdbffi.query(sql)
    end_time = time.perf_counter()
    print(f"query() {result.stats.rows_read} rows, {len(result)} bytes: {end_time - start_time:.4f}s")

    print("Benchmarking Connection.query()...")
    start_time = time.perf_counter()
    result = conn.query(sql)
    end_time = time.perf_counter()
    print(f"Connection.query() {result.stats.rows_read} rows: {end_time - start_time:.4f}s")
    assert result.stats.rows_read == count

    print("Benchmarking Connection.stream()...")
    start_time = time.perf_counter()
    total = 0
    chunks = 0
    with conn.stream(sql) as cursor:
        for chunk in cursor:
            total += chunk.stats.rows_read
            chunks += 1
    end_time = time.perf_counter()
    print(f"Connection.stream() {total} rows in {chunks} chunks: {end_time - start_time:.4f}s")
    assert total == count

    # Time to first chunk
    start_time = time.perf_counter()
    with conn.stream(sql) as cursor:
        first = cursor.fetch()
    assert first is not None, "stream produced no chunks"
    end_time = time.perf_counter()
    print(f"First chunk ({first.stats.rows_read} rows) then cancel: {end_time - start_time:.4f}s")

    conn.close()

if __name__ == "__main__":
    run_benchmark()
