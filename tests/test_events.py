from mcprelay.core.events import EventBus


def test_handlers_run_in_priority_then_subscription_order():
    bus = EventBus()
    calls = []

    bus.subscribe("status_changed", lambda e: calls.append("first"))
    bus.subscribe("status_changed", lambda e: calls.append("second"))
    bus.subscribe("status_changed", lambda e: calls.append("urgent"), priority=10)
    bus.subscribe("*", lambda e: calls.append(f"any:{e.name}"))

    event = bus.emit("status_changed", {"server": "docs"}, source="docs")

    assert calls == ["urgent", "first", "second", "any:status_changed"]
    assert event.source == "docs"
    assert event.to_dict()["data"] == {"server": "docs"}


def test_duplicate_subscription_is_ignored_and_unsubscribe_works():
    bus = EventBus()
    calls = []

    def handler(e):
        calls.append(e.name)

    bus.subscribe("error", handler)
    bus.subscribe("error", handler)
    bus.emit("error", {})
    bus.unsubscribe("error", handler)
    bus.emit("error", {})

    assert calls == ["error"]


def test_failing_handler_does_not_break_emitter():
    bus = EventBus()
    calls = []

    def broken(e):
        raise RuntimeError("handler bug")

    bus.subscribe("error", broken)
    bus.subscribe("error", lambda e: calls.append("ok"))

    bus.emit("error", {})

    assert calls == ["ok"]


def test_history_is_bounded_and_filterable():
    bus = EventBus(max_history=3)
    for i in range(5):
        bus.emit("tick" if i % 2 else "tock", {"i": i})

    assert [e.data["i"] for e in bus.get_history()] == [2, 3, 4]
    assert [e.data["i"] for e in bus.get_history("tick")] == [3]

    bus.clear_history()
    assert bus.get_history() == []
