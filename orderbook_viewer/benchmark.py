#!/usr/bin/env python3
"""
Micro-benchmark for the order book hot paths.

Tests:
1. Delta application throughput (OrderBook.apply)
2. View calculation speed (compute_view)
3. Full message -> view cycle through the connection machine handlers

Usage:
    python -m orderbook_viewer.benchmark
"""

from __future__ import annotations

import random
import time
from statistics import mean, stdev

from .datafeed.orderbook import OrderBook
from .engine.view import compute_view

TICK_SIZE = 0.5


def generate_mock_snapshot(base_price: float = 40000.0, levels: int = 1000) -> dict:
    """Generate a mock snapshot message."""
    bids = []
    asks = []

    for i in range(levels):
        bids.append([base_price - (i + 1) * TICK_SIZE, random.randint(1, 100_000)])
        asks.append([base_price + (i + 1) * TICK_SIZE, random.randint(1, 100_000)])

    return {
        'feed': 'book_ui_1_snapshot',
        'product_id': 'PI_XBTUSD',
        'numLevels': levels,
        'bids': bids,
        'asks': asks,
    }


def generate_mock_delta(base_price: float, changes: int = 50) -> dict:
    """Generate a mock delta message (~20% removals)."""
    bids = []
    asks = []

    for _ in range(changes // 2):
        offset = random.randint(1, 500)
        bid_size = random.randint(1, 100_000) if random.random() > 0.2 else 0
        ask_size = random.randint(1, 100_000) if random.random() > 0.2 else 0

        bids.append([base_price - offset * TICK_SIZE, bid_size])
        asks.append([base_price + offset * TICK_SIZE, ask_size])

    return {
        'feed': 'book_ui_1',
        'product_id': 'PI_XBTUSD',
        'bids': bids,
        'asks': asks,
    }


def benchmark_deltas(iterations: int = 10000) -> None:
    """Benchmark delta application throughput."""
    print("\n=== Delta Application Benchmark ===")

    book = OrderBook()
    book.apply(generate_mock_snapshot())

    deltas = [generate_mock_delta(40000.0, changes=50) for _ in range(iterations)]

    # Warm up
    for d in deltas[:100]:
        book.apply(d)

    start = time.perf_counter()
    for d in deltas:
        book.apply(d)
    elapsed = time.perf_counter() - start

    rate = iterations / elapsed
    print(f"  Deltas applied: {iterations:,}")
    print(f"  Time: {elapsed*1000:.1f}ms")
    print(f"  Rate: {rate:,.0f} deltas/sec")
    print(f"  Per delta: {elapsed/iterations*1_000_000:.1f}µs")


def benchmark_view(iterations: int = 1000, depth: int = 25) -> None:
    """Benchmark view calculation."""
    print("\n=== View Calculation Benchmark ===")

    book = OrderBook()
    book.apply(generate_mock_snapshot())

    for _ in range(10):
        compute_view(book.bids, book.asks, depth)

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        compute_view(book.bids, book.asks, depth)
        times.append(time.perf_counter() - start)

    avg_time = mean(times) * 1000
    std_time = stdev(times) * 1000

    print(f"  Iterations: {iterations}")
    print(f"  Depth: {depth}")
    print(f"  Avg time: {avg_time:.3f}ms")
    print(f"  Std dev: {std_time:.3f}ms")
    print(f"  Rate: {1000/avg_time:,.0f} calls/sec")


def benchmark_machine_cycle(iterations: int = 5000, depth: int = 25) -> None:
    """Benchmark message handling + periodic view through the machine."""
    print("\n=== Machine Message Cycle Benchmark ===")

    from .engine.machine import ConnectionMachine, State
    from .types import Calculate, MessageReceived

    machine = ConnectionMachine(transport=None)  # type: ignore[arg-type]
    machine.state = State.LISTENING
    machine.context.subscribed_product_id = 'PI_XBTUSD'
    machine._dispatch(MessageReceived(generate_mock_snapshot()))

    deltas = [generate_mock_delta(40000.0) for _ in range(iterations)]

    start = time.perf_counter()
    for i, d in enumerate(deltas):
        machine._dispatch(MessageReceived(d))
        if i % 10 == 0:
            machine._dispatch(Calculate(depth))
    elapsed = time.perf_counter() - start

    print(f"  Messages: {iterations:,} (view every 10th)")
    print(f"  Time: {elapsed*1000:.1f}ms")
    print(f"  Rate: {iterations/elapsed:,.0f} messages/sec")


def main() -> None:
    """Run all benchmarks."""
    print("=" * 60)
    print("Order Book Viewer Performance Benchmark")
    print("=" * 60)

    benchmark_deltas()
    benchmark_view()
    benchmark_machine_cycle()

    print("\n" + "=" * 60)
    print("Benchmark complete.")
    print("=" * 60)


if __name__ == "__main__":
    main()
