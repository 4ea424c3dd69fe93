import threading

import pytest

from vrelay.stats import Stat, StatsRegistry

NAME = "outbound>>>proxy>>>traffic>>>uplink"


def test_get_stats_reads_added_value():
    registry = StatsRegistry([NAME])
    registry.counter(NAME).add(1500)
    stat = registry.get_stats(NAME, False)
    assert stat == Stat(NAME, 1500)
    assert registry.get_stats(NAME, False).value == 1500


def test_get_stats_reset_zeroes_counter():
    registry = StatsRegistry()
    registry.register(NAME).add(42)
    assert registry.get_stats(NAME, True).value == 42
    assert registry.get_stats(NAME, False).value == 0


def test_unknown_name_is_invalid():
    registry = StatsRegistry([NAME])
    with pytest.raises(ValueError, match="name is invalid"):
        registry.get_stats("missing", False)


def test_counter_lookup_unknown_raises():
    registry = StatsRegistry()
    with pytest.raises(KeyError):
        registry.counter(NAME)


def test_register_twice_keeps_counter():
    registry = StatsRegistry()
    first = registry.register(NAME)
    first.add(7)
    second = registry.register(NAME)
    assert second is first
    assert registry.get_stats(NAME, False).value == 7
    assert NAME in registry


def test_swap_returns_previous_value():
    registry = StatsRegistry([NAME])
    counter = registry.counter(NAME)
    counter.add(9)
    assert counter.swap(3) == 9
    assert counter.load() == 3


def test_value_reported_as_signed_64_bit():
    registry = StatsRegistry([NAME])
    registry.counter(NAME).add((1 << 64) - 1)
    assert registry.get_stats(NAME, False).value == -1


def test_counter_is_thread_safe():
    registry = StatsRegistry([NAME])
    counter = registry.counter(NAME)
    threads_count = 4
    iterations = 1000

    def work():
        for _ in range(iterations):
            counter.add(1)

    threads = [threading.Thread(target=work) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert registry.get_stats(NAME, False).value == threads_count * iterations