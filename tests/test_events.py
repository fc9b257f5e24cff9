"""Tests for the EventHandler callback list."""

from xrwall.events import EventHandler


def test_invoke_calls_listeners_in_order():
    handler = EventHandler("test")
    calls = []
    handler.add_listener(lambda x: calls.append(("a", x)))
    handler.add_listener(lambda x: calls.append(("b", x)))

    handler.invoke(1)

    assert calls == [("a", 1), ("b", 1)]
    assert len(handler) == 2


def test_unsubscribe_function():
    handler = EventHandler()
    calls = []
    unsubscribe = handler.add_listener(calls.append)
    unsubscribe()
    unsubscribe()  # second call is harmless

    handler.invoke("x")
    assert calls == []


def test_failing_listener_does_not_stop_others():
    handler = EventHandler("test")
    calls = []

    def broken(_):
        raise ValueError("boom")

    handler.add_listener(broken)
    handler.add_listener(calls.append)

    handler.invoke("payload")
    assert calls == ["payload"]


def test_listener_may_unsubscribe_during_invoke():
    handler = EventHandler()
    calls = []

    def once(value):
        calls.append(value)
        handler.remove_listener(once)

    handler.add_listener(once)
    handler.invoke(1)
    handler.invoke(2)
    assert calls == [1]


def test_clear():
    handler = EventHandler()
    handler.add_listener(print)
    handler.clear()
    assert len(handler) == 0
