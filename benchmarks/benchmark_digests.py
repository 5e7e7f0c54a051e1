#!/usr/bin/env python3
"""
Benchmark: chunksync with MD5 vs XXH128 chunk digests
=====================================================

Runs a local transfer for several edit patterns with both digest types and
reports time, reuse and correctness. The receiver hashes one window per byte
it scans, so the digest cost dominates whenever chunks have moved.
"""

import os
import time
import random
import tempfile

from chunksync import DigestType, sync_files


def random_bytes(rng: random.Random, n: int) -> bytes:
    return bytes(rng.getrandbits(8) for _ in range(n))


def overwrite_scattered(old: bytes, amount: int, rng: random.Random) -> bytes:
    """Overwrite `amount` bytes at random offsets, keeping the length."""
    data = bytearray(old)
    for pos in rng.sample(range(len(data)), min(amount, len(data))):
        data[pos] ^= 0xFF
    return bytes(data)


def grow_at_end(old: bytes, amount: int, rng: random.Random) -> bytes:
    return old + random_bytes(rng, amount)


def shift_from_start(old: bytes, amount: int, rng: random.Random) -> bytes:
    """Every chunk boundary moves, so each reused chunk needs a scan."""
    return random_bytes(rng, amount) + old


def splice_middle(old: bytes, amount: int, rng: random.Random) -> bytes:
    mid = len(old) // 2
    return old[:mid] + random_bytes(rng, amount) + old[mid:]


EDITS = {
    'scattered': overwrite_scattered,
    'append': grow_at_end,
    'prepend': shift_from_start,
    'splice': splice_middle,
}


def benchmark_transfer(new_path: str, old_bytes: bytes, dest_dir: str,
                       chunk_size: int, digest_type: DigestType) -> dict:
    """Restore the old copy, then time one transfer into it"""
    dest = os.path.join(dest_dir, 'file.dat')
    with open(dest, 'wb') as f:
        f.write(old_bytes)

    start = time.time()
    _, stats = sync_files(new_path, dest, chunk_size=chunk_size, digest_type=digest_type)
    total_time = time.time() - start

    with open(dest, 'rb') as f_dest, open(new_path, 'rb') as f_new:
        verified = f_dest.read() == f_new.read()

    return {
        'total_time': total_time,
        'chunks': stats.chunks,
        'matched_chunks': stats.matched_chunks,
        'literal_bytes': stats.literal_data,
        'efficiency': stats.efficiency,
        'verified': verified,
    }


def run_benchmark_suite():
    """Run complete benchmark suite"""
    print("\n" + "=" * 80)
    print("BENCHMARK: chunksync md5 vs xxh128".center(80))
    print("=" * 80)

    # (label, original size in KB, edit, changed percent, chunk size)
    test_cases = [
        ('64KB scattered 1%', 64, 'scattered', 1, 1024),
        ('64KB append 5%', 64, 'append', 5, 1024),
        ('64KB prepend 5%', 64, 'prepend', 5, 1024),
        ('64KB splice 5%', 64, 'splice', 5, 1024),
        ('256KB splice 1%', 256, 'splice', 1, 2048),
    ]

    with tempfile.TemporaryDirectory() as tmpdir:
        dest_dir = os.path.join(tmpdir, 'dest')
        os.makedirs(dest_dir)
        new = os.path.join(tmpdir, 'new.dat')
        for case_i, (label, size_kb, edit, change_percent, chunk_size) in enumerate(test_cases, start=1):
            print(f"\nTesting: {label}")
            rng = random.Random(123 + case_i)
            old_bytes = random_bytes(rng, size_kb * 1024)
            amount = int(len(old_bytes) * change_percent / 100)
            with open(new, 'wb') as f:
                f.write(EDITS[edit](old_bytes, amount, rng))

            for digest_type in DigestType:
                r = benchmark_transfer(new, old_bytes, dest_dir, chunk_size, digest_type)
                mark = 'ok' if r['verified'] else 'FAILED'
                print(f"  {digest_type.value:>6}: {r['total_time']:.3f}s  "
                      f"reused {r['matched_chunks']}/{r['chunks']} chunks  "
                      f"literal {r['literal_bytes']} bytes  "
                      f"efficiency {r['efficiency']:.1%}  [{mark}]")

    print("\n" + "=" * 80)


if __name__ == '__main__':
    run_benchmark_suite()
