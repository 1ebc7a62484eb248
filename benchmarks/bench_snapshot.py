"""
Benchmark: Snapshot Performance

Measures the hot paths editor glue leans on:
1. Create for a ~1 MB file (plain blob)
2. Create for a ~10 MB file (crosses the compression threshold)
3. Duplicate create (dedup hit against the chain head)
4. Timeline load: listing a long chain newest-first

Usage:
    python -m benchmarks.bench_snapshot --rounds 3 --chain 1000
"""

import argparse
import json
import random
import shutil
import sys
import tempfile
import time
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from snaptrail.config import MIB, HistoryConfig
from snaptrail.history import LocalHistory


def make_content(size_bytes: int, seed: int) -> str:
    """Source-like text of roughly size_bytes."""
    rng = random.Random(seed)
    lines = []
    total = 0
    while total < size_bytes:
        line = f"    value_{rng.randint(0, 999999)} = compute({rng.random():.6f})  # line {len(lines)}\n"
        lines.append(line)
        total += len(line)
    return "".join(lines)


def _timing(timings: list[float]) -> dict:
    return {
        "mean": sum(timings) / len(timings),
        "min": min(timings),
        "max": max(timings),
    }


def run_benchmark(rounds: int, chain_length: int):
    tmpdir = Path(tempfile.mkdtemp(prefix="snaptrail_bench_"))
    config = HistoryConfig(max_snapshots_per_file=max(chain_length, 100) + rounds * 4)
    history = LocalHistory.open(tmpdir / "history", config=config)

    results = {}

    for label, size in (("create_1mb", 1 * MIB), ("create_10mb", 10 * MIB + 1)):
        timings = []
        for r in range(rounds):
            content = make_content(size, seed=r)
            t0 = time.monotonic()
            history.create_snapshot(f"file:///bench/{label}.py", content, "save")
            elapsed = time.monotonic() - t0
            timings.append(elapsed)
            print(f"  {label} round {r+1}: {elapsed:.3f}s")
        results[label] = _timing(timings)

    # Dedup: same content as the head
    content = make_content(256 * 1024, seed=42)
    history.create_snapshot("file:///bench/dedup.py", content)
    timings = []
    for r in range(rounds):
        t0 = time.monotonic()
        history.create_snapshot("file:///bench/dedup.py", content)
        elapsed = time.monotonic() - t0
        timings.append(elapsed)
        print(f"  dedup round {r+1}: {elapsed:.3f}s")
    results["dedup_hit"] = _timing(timings)

    # Timeline load
    print(f"Building a chain of {chain_length} snapshots...")
    for i in range(chain_length):
        history.create_snapshot("file:///bench/timeline.py", f"revision {i}\n", "typing")
    timings = []
    for r in range(rounds):
        t0 = time.monotonic()
        chain = history.get_snapshots_for_file("file:///bench/timeline.py")
        elapsed = time.monotonic() - t0
        timings.append(elapsed)
        print(f"  timeline load round {r+1}: {elapsed:.3f}s ({len(chain)} snapshots)")
    results["timeline_load"] = _timing(timings)

    results["storage"] = history.stats()

    print(f"\n{'='*60}")
    print(f"RESULTS ({rounds} rounds, chain of {chain_length})")
    print(f"{'='*60}")
    for name, timing in results.items():
        if name == "storage":
            print("\nStorage:")
            print(f"  Snapshots: {timing['total_snapshots']}")
            print(f"  Bytes:     {timing['total_size']:,}")
        else:
            print(f"\n{name}:")
            print(f"  Mean: {timing['mean']:.3f}s")
            print(f"  Min:  {timing['min']:.3f}s")
            print(f"  Max:  {timing['max']:.3f}s")

    history.close()
    shutil.rmtree(tmpdir, ignore_errors=True)
    return results


def main():
    parser = argparse.ArgumentParser(description="Snaptrail snapshot benchmark")
    parser.add_argument("--rounds", type=int, default=3, help="Rounds per benchmark")
    parser.add_argument("--chain", type=int, default=1000, help="Chain length for timeline load")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    args = parser.parse_args()

    results = run_benchmark(args.rounds, args.chain)

    if args.json:
        output = {
            "benchmark": "snapshot",
            "params": {"rounds": args.rounds, "chain": args.chain},
            "results": results,
        }
        print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
