"""Tests for the reactive primitives."""

import pytest

from storefront_state.reactive import Computed, Observable


class TestObservable:
    """Test value cells."""

    def test_set_notifies_subscribers(self):
        """Test subscribers receive each new value"""
        cell = Observable(1)
        seen = []
        cell.subscribe(seen.append)

        cell.value = 2
        cell.set(3)

        assert seen == [2, 3]
        assert cell.get() == 3

    def test_equal_value_does_not_notify(self):
        """Test assigning an equal value is silent"""
        cell = Observable({"a": 1})
        seen = []
        cell.subscribe(seen.append)

        cell.value = {"a": 1}

        assert seen == []

    def test_unsubscribe(self):
        """Test unsubscribed callbacks are not called"""
        cell = Observable(0)
        seen = []
        unsubscribe = cell.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        cell.value = 1

        assert seen == []

    def test_call_immediately(self):
        """Test call_immediately delivers the current value"""
        cell = Observable("x")
        seen = []
        cell.subscribe(seen.append, call_immediately=True)
        assert seen == ["x"]


class TestComputed:
    """Test derived values."""

    def test_lazy_and_memoized(self):
        """Test the derivation runs on read and only after a source change"""
        source = Observable(2)
        calls = []

        def double(value):
            calls.append(value)
            return value * 2

        derived = Computed(double, source)
        assert calls == []

        assert derived.value == 4
        assert derived.value == 4
        assert calls == [2]

        source.value = 5
        assert derived.value == 10
        assert calls == [2, 5]

    def test_multiple_sources(self):
        """Test a derivation over two sources"""
        a, b = Observable(1), Observable(10)
        total = Computed(lambda x, y: x + y, a, b)

        b.value = 20
        assert total.value == 21

    def test_notifies_only_on_changed_result(self):
        """Test subscribers hear about changes of the derived value only"""
        source = Observable(3)
        parity = Computed(lambda value: value % 2, source)
        seen = []
        parity.subscribe(seen.append)

        source.value = 5
        source.value = 6

        assert seen == [0]

    def test_chained(self):
        """Test a computed value over another computed value"""
        source = Observable([1, 2, 3])
        total = Computed(sum, source)
        label = Computed(lambda value: f"total={value}", total)

        source.value = [4]
        assert label.value == "total=4"

    def test_read_only(self):
        """Test assigning to a computed value fails"""
        derived = Computed(lambda value: value, Observable(1))
        with pytest.raises(AttributeError):
            derived.value = 2

    def test_dispose(self):
        """Test a disposed computed value stops following its sources"""
        source = Observable(1)
        derived = Computed(lambda value: value, source)
        assert derived.value == 1

        derived.dispose()
        source.value = 2

        assert derived.value == 1
