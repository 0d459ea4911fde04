from cinegenie.events import AssetEvents


def test_notify_and_unsubscribe():
    events = AssetEvents()
    calls = []
    unsubscribe = events.subscribe(lambda: calls.append("a"))
    events.subscribe(lambda: calls.append("b"))

    events.notify()
    unsubscribe()
    unsubscribe()
    events.notify()

    assert calls == ["a", "b", "b"]


def test_failing_listener_does_not_stop_others():
    events = AssetEvents()
    calls = []

    def broken():
        raise RuntimeError("view crashed")

    events.subscribe(broken)
    events.subscribe(lambda: calls.append(True))
    events.notify()

    assert calls == [True]
