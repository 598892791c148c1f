from ledger_mirror.events.mapper import map_event, parse_action_type, parse_pool_status
from ledger_mirror.models import (
    ActionType,
    HintType,
    PoolActivityEvent,
    PoolStateEvent,
    PoolStatus,
    RawEventRecord,
    UIHintEvent,
)


def _activity_data(**overrides):
    data = {
        "pool": "Pool1111",
        "user": "User1111",
        "action": {"joined": {}},
        "amount": 100,
        "timestamp": 1_700_000_000,
        "participant_count": 3,
    }
    data.update(overrides)
    return data


def test_maps_pool_activity():
    event = map_event(RawEventRecord("PoolActivityEvent", _activity_data()))

    assert isinstance(event, PoolActivityEvent)
    assert event.kind == "PoolActivityEvent"
    assert event.action == ActionType.JOINED
    assert event.amount == 100


def test_maps_pool_state_transitions():
    event = map_event(RawEventRecord("PoolStateEvent", {
        "pool": "Pool1111",
        "old_status": {"open": {}},
        "new_status": {"winnerSelected": {}},
        "timestamp": 5,
        "reason": 2,
    }))

    assert isinstance(event, PoolStateEvent)
    assert event.old_status == PoolStatus.OPEN
    assert event.new_status == PoolStatus.WINNER_SELECTED


def test_unknown_event_name_maps_to_none():
    assert map_event(RawEventRecord("PoolRenamedEvent", {"pool": "x"})) is None


def test_unknown_enum_key_maps_to_unknown():
    event = map_event(RawEventRecord("PoolActivityEvent", _activity_data(action={"teleported": {}})))
    assert event.action == ActionType.UNKNOWN

    hint = map_event(RawEventRecord("UIHintEvent", {
        "pool": "Pool1111", "hint_type": {"variant9": {}}, "timestamp": 1, "data": 0,
    }))
    assert isinstance(hint, UIHintEvent)
    assert hint.hint_type == HintType.UNKNOWN


def test_empty_enum_value_drops_the_record():
    assert map_event(RawEventRecord("PoolActivityEvent", _activity_data(action={}))) is None
    assert map_event(RawEventRecord("PoolActivityEvent", _activity_data(action=7))) is None


def test_missing_field_drops_the_record():
    data = _activity_data()
    del data["amount"]
    assert map_event(RawEventRecord("PoolActivityEvent", data)) is None


def test_plain_string_variants_are_accepted():
    assert parse_action_type("reachedMax") == ActionType.REACHED_MAX
    assert parse_pool_status("closed") == PoolStatus.CLOSED
    assert parse_pool_status("paused") == PoolStatus.UNKNOWN
