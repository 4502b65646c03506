#!/usr/bin/env python3
"""
Benchmark: beat-patcher apply throughput
========================================

Builds synthetic BPS patches for a few typical edit patterns and times
apply_patch() across chunk sizes and patch containers.
"""

import io
import random
import struct
import time
import zlib

from beat_patcher import (
    BPS_MARKER,
    CompressionRegistry,
    CompressionType,
    Config,
    Colors,
    apply_patch,
    encode_signed,
    encode_varint,
    format_size,
    open_patch,
)

colors = Colors


def create_source(size_mb: int, seed: int = 123) -> bytes:
    """Deterministic, partly compressible source image"""
    rnd = random.Random(seed)
    block = bytes(rnd.randint(0, 255) for _ in range(4096))
    pattern = b"Hello World! " * 315
    out = bytearray()
    while len(out) < size_mb * 1024 * 1024:
        out += block if rnd.random() < 0.5 else pattern[:4096]
    return bytes(out[:size_mb * 1024 * 1024])


def build_patch(source: bytes, pattern: str, seed: int = 7):
    """Return (patch_bytes, expected_target) for one edit pattern.

    Supported patterns:
        - identity: one SourceRead over the whole file
        - scattered: SourceRead runs broken by short TargetRead literals
        - shuffled: SourceCopy of fixed blocks in random order
        - fill: a short literal expanded with an overlapping TargetCopy
    """
    rnd = random.Random(seed)
    commands = bytearray()
    target = bytearray()

    def token(command: int, length: int) -> bytes:
        return encode_varint(((length - 1) << 2) | command)

    if pattern == 'identity':
        commands += token(0, len(source))
        target += source
    elif pattern == 'scattered':
        while len(target) < len(source):
            run = min(rnd.randint(512, 8192), len(source) - len(target))
            commands += token(0, run)
            target += source[len(target):len(target) + run]
            literal = bytes(rnd.randint(0, 255) for _ in range(min(16, len(source) - len(target))))
            if literal:
                commands += token(1, len(literal)) + literal
                target += literal
    elif pattern == 'shuffled':
        block = 4096
        order = list(range(len(source) // block))
        rnd.shuffle(order)
        cursor = 0
        for index in order:
            commands += token(2, block) + encode_signed(index * block - cursor)
            target += source[index * block:(index + 1) * block]
            cursor = (index + 1) * block
    elif pattern == 'fill':
        commands += token(1, 3) + b'\xde\xad\x00'
        commands += token(3, len(source) - 3) + encode_signed(0)
        target += b'\xde\xad\x00'
        while len(target) < len(source):
            target.append(target[len(target) - 3])
    else:
        raise ValueError(f"Unknown pattern: {pattern}")

    body = (
        BPS_MARKER
        + encode_varint(len(source))
        + encode_varint(len(target))
        + encode_varint(0)
        + bytes(commands)
    )
    body += struct.pack('<II', zlib.crc32(source), zlib.crc32(target))
    body += struct.pack('<I', zlib.crc32(body))
    return body, bytes(target)


def benchmark_apply(source: bytes, patch: bytes, expected: bytes, chunk_size: int) -> dict:
    """Time one in-memory application"""
    Config.CHUNK_SIZE = chunk_size
    target = io.BytesIO()

    start = time.time()
    session = apply_patch(io.BytesIO(source), target, io.BytesIO(patch), verify=False)
    apply_time = time.time() - start

    start = time.time()
    apply_patch(io.BytesIO(source), io.BytesIO(), io.BytesIO(patch), verify=True)
    verify_time = time.time() - start - apply_time

    return {
        'apply_time': apply_time,
        'verify_time': max(0.0, verify_time),
        'hunks': session.stats.hunks,
        'verified': target.getvalue() == expected,
    }


def benchmark_container(patch: bytes, comp_type: CompressionType, tmpdir: str) -> dict:
    """Time opening a patch wrapped in a compressed container"""
    import os

    path = os.path.join(tmpdir, f'patch.bps.{comp_type.value}')
    wrapped = CompressionRegistry.compress(patch, comp_type)
    with open(path, 'wb') as f:
        f.write(wrapped)

    start = time.time()
    with open_patch(path) as handle:
        data = handle.read()
    return {
        'open_time': time.time() - start,
        'size': len(wrapped),
        'verified': data == patch,
    }


def run_benchmark_suite():
    """Run complete benchmark suite"""
    import tempfile

    print(colors.bold("\n" + "=" * 80))
    print(colors.bold("BENCHMARK: beat-patcher apply".center(80)))
    print(colors.bold("=" * 80))

    test_cases = [
        ('4MB identity', 4, 'identity'),
        ('4MB scattered', 4, 'scattered'),
        ('4MB shuffled', 4, 'shuffled'),
        ('4MB fill', 4, 'fill'),
    ]
    chunk_sizes = [4 * 1024, 64 * 1024, 1024 * 1024]

    results = []
    with tempfile.TemporaryDirectory() as tmpdir:
        for name, size_mb, pattern in test_cases:
            print(f"\n{colors.info(f'Testing: {name}')}")
            source = create_source(size_mb)
            patch, expected = build_patch(source, pattern)

            runs = []
            for chunk_size in chunk_sizes:
                print(f"  Chunk {format_size(chunk_size)}...", end=' ', flush=True)
                run = benchmark_apply(source, patch, expected, chunk_size)
                print(colors.success(f"{run['apply_time']:.3f}s"))
                runs.append((chunk_size, run))

            containers = [
                (comp_type, benchmark_container(patch, comp_type, tmpdir))
                for comp_type in (CompressionType.ZSTD, CompressionType.LZ4)
            ]
            results.append({'name': name, 'patch_size': len(patch),
                            'target_size': len(expected), 'runs': runs,
                            'containers': containers})
    Config.reset_defaults()

    print(f"\n{colors.bold('=' * 80)}")
    print(colors.bold("BENCHMARK RESULTS SUMMARY".center(80)))
    print(colors.bold("=" * 80))

    for r in results:
        print(f"\n{colors.bold(r['name'])}")
        print(f"  Patch size:     {format_size(r['patch_size'])}")
        for chunk_size, run in r['runs']:
            throughput = r['target_size'] / run['apply_time'] if run['apply_time'] else 0.0
            print(f"  Chunk {format_size(chunk_size):>10}: {run['apply_time']:.3f}s "
                  f"({format_size(int(throughput))}/s, {run['hunks']:,} hunks, "
                  f"CRC {run['verify_time']:.3f}s)")
            print(f"    Verified:     {colors.success('ok') if run['verified'] else colors.error('mismatch')}")
        for comp_type, container in r['containers']:
            print(f"  {comp_type.value:<5} container: {format_size(container['size'])}, "
                  f"open {container['open_time']:.3f}s "
                  f"{colors.success('ok') if container['verified'] else colors.error('mismatch')}")

    print(f"\n{colors.bold('=' * 80)}")
    print(colors.success("Benchmark complete!"))
    print(colors.bold("=" * 80))


if __name__ == '__main__':
    run_benchmark_suite()
