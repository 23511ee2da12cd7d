from __future__ import annotations

import pytest

from pstress.core.event_bus import (
    PASS_RECORDED,
    RUN_FINISHED,
    STATE_CHANGED,
    WILDCARD,
    EventBus,
)


@pytest.fixture
def bus():
    return EventBus(keep_history=True)


class TestDelivery:
    def test_handler_receives_payload(self, bus):
        seen = []
        bus.subscribe(STATE_CHANGED, seen.append)
        bus.emit(STATE_CHANGED, {"from": "initializing", "to": "numbering"})
        assert seen == [{"from": "initializing", "to": "numbering"}]

    def test_handlers_called_in_subscription_order(self, bus):
        order = []
        bus.subscribe(PASS_RECORDED, lambda d: order.append("recorder"))
        bus.subscribe(PASS_RECORDED, lambda d: order.append("printer"))
        bus.emit(PASS_RECORDED, {"pass_number": 1})
        assert order == ["recorder", "printer"]

    def test_other_events_not_delivered(self, bus):
        seen = []
        bus.subscribe(RUN_FINISHED, seen.append)
        bus.emit(PASS_RECORDED, {"pass_number": 1})
        assert seen == []

    def test_wildcard_sees_every_event(self, bus):
        names = []
        bus.subscribe(WILDCARD, lambda d: names.append(d["name"]))
        bus.emit(STATE_CHANGED, {"name": "state"})
        bus.emit(RUN_FINISHED, {"name": "finished"})
        assert names == ["state", "finished"]

    def test_unsubscribe_only_removes_given_handler(self, bus):
        kept, dropped = [], []
        drop_handler = dropped.append
        bus.subscribe(STATE_CHANGED, kept.append)
        bus.subscribe(STATE_CHANGED, drop_handler)
        bus.unsubscribe(STATE_CHANGED, drop_handler)
        bus.emit(STATE_CHANGED, {"to": "solving"})
        assert kept == [{"to": "solving"}]
        assert dropped == []

    def test_unsubscribe_unknown_event_is_noop(self, bus):
        bus.unsubscribe("never.subscribed", print)

    def test_raising_handler_is_isolated(self, bus, caplog):
        def broken(data):
            raise ValueError("subscriber bug")

        seen = []
        bus.subscribe(PASS_RECORDED, broken)
        bus.subscribe(PASS_RECORDED, seen.append)
        bus.emit(PASS_RECORDED, {"pass_number": 2})
        assert seen == [{"pass_number": 2}]
        assert "subscriber bug" in caplog.text


class TestHistory:
    def test_history_by_event(self, bus):
        bus.emit(STATE_CHANGED, {"to": "numbering"})
        bus.emit(PASS_RECORDED, {"pass_number": 1})
        bus.emit(STATE_CHANGED, {"to": "converged"})
        assert len(bus.get_history()) == 3
        assert [h["data"]["to"] for h in bus.get_history(STATE_CHANGED)] == [
            "numbering", "converged",
        ]
        assert bus.get_history(PASS_RECORDED)[0]["event"] == PASS_RECORDED

    def test_clear_history(self, bus):
        bus.emit(RUN_FINISHED, {"state": "converged"})
        bus.clear_history()
        assert bus.get_history() == []

    def test_history_off_by_default(self):
        quiet = EventBus()
        quiet.emit(STATE_CHANGED, {"to": "numbering"})
        assert quiet.get_history() == []
        quiet.clear_history()
