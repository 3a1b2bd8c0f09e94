import pytest
from sqlmodel import select

from models.entities import Flow, FlowEntry, UserProfile, UserSettings
from services.entity_handlers import (
    FlowEntryHandler,
    FlowHandler,
    UserProfileHandler,
    UserSettingsHandler,
)
from services.errors import EntityNotFoundError, InvalidOperationError


@pytest.fixture()
def flows(clock):
    return FlowHandler(clock=clock)


def _run(session_factory, fn, *args):
    with session_factory() as session:
        result = fn(session, *args)
        session.commit()
        return result


def _seed_flow(session_factory, flows, flow_id="flow-1", user="user-1", title="Read"):
    return _run(session_factory, flows.create, user, flow_id, {"title": title}, {})


def test_create_flow(session_factory, flows):
    assert _seed_flow(session_factory, flows) == {"id": "flow-1", "status": "created"}

    with session_factory() as session:
        flow = session.get(Flow, "flow-1")
        assert flow.title == "Read"
        assert flow.owner_id == "user-1"


def test_repeated_create_does_not_duplicate(session_factory, flows):
    _seed_flow(session_factory, flows)
    again = _run(session_factory, flows.create, "user-1", "flow-1", {"title": "Read more"}, {})

    assert again["status"] == "updated"
    with session_factory() as session:
        rows = session.exec(select(Flow)).all()
        assert len(rows) == 1
        assert rows[0].title == "Read more"


def test_create_flow_requires_title(session_factory, flows):
    with pytest.raises(InvalidOperationError):
        _run(session_factory, flows.create, "user-1", "flow-1", {"description": "x"}, {})


def test_update_missing_flow_is_retryable(session_factory, flows):
    with pytest.raises(EntityNotFoundError) as excinfo:
        _run(session_factory, flows.update, "user-1", "ghost", {"title": "x"}, {})
    assert excinfo.value.retryable


def test_update_other_users_flow_rejected(session_factory, flows):
    _seed_flow(session_factory, flows)
    with pytest.raises(InvalidOperationError):
        _run(session_factory, flows.update, "intruder", "flow-1", {"title": "mine"}, {})


def test_stale_update_merges_with_server(session_factory, flows, clock):
    base = clock()
    _seed_flow(session_factory, flows)
    clock.advance(hours=1)
    _run(session_factory, flows.update, "user-1", "flow-1", {"description": "server edit", "frequency": "Weekly"}, {})
    clock.advance(hours=1)

    metadata = {"base_updated_at": base.isoformat()}
    result = _run(
        session_factory,
        flows.update,
        "user-1",
        "flow-1",
        {"name": "Read daily", "frequency": "Monthly"},
        metadata,
    )

    assert result == {"id": "flow-1", "status": "updated", "resolution": "merge"}
    with session_factory() as session:
        flow = session.get(Flow, "flow-1")
        assert flow.title == "Read daily"
        assert flow.description == "server edit"
        assert flow.frequency == "Weekly"


def test_timestamp_conflict_hint_keeps_server(session_factory, flows, clock):
    base = clock()
    _seed_flow(session_factory, flows)
    clock.advance(minutes=5)
    _run(session_factory, flows.update, "user-1", "flow-1", {"title": "Server"}, {})

    result = _run(
        session_factory,
        flows.update,
        "user-1",
        "flow-1",
        {"title": "Local"},
        {"base_updated_at": base.isoformat(), "conflict_type": "timestamp_conflict"},
    )

    assert result["resolution"] == "server"
    with session_factory() as session:
        assert session.get(Flow, "flow-1").title == "Server"


def test_deleted_flow_is_not_resurrected(session_factory, flows):
    _seed_flow(session_factory, flows)
    assert _run(session_factory, flows.delete, "user-1", "flow-1", {})["status"] == "deleted"

    result = _run(session_factory, flows.update, "user-1", "flow-1", {"title": "Back"}, {})
    assert result["status"] == "unchanged"
    assert result["resolution"] == "server"
    recreated = _run(session_factory, flows.create, "user-1", "flow-1", {"title": "Back"}, {})
    assert recreated["status"] == "unchanged"

    with session_factory() as session:
        flow = session.get(Flow, "flow-1")
        assert flow.deleted_at is not None
        assert flow.title == "Read"


def test_delete_is_idempotent(session_factory, flows):
    _seed_flow(session_factory, flows)
    first = _run(session_factory, flows.delete, "user-1", "flow-1", {})
    second = _run(session_factory, flows.delete, "user-1", "flow-1", {})
    missing = _run(session_factory, flows.delete, "user-1", "never-existed", {})
    assert first == second == {"id": "flow-1", "status": "deleted"}
    assert missing["status"] == "deleted"


def test_flow_entry_needs_live_flow(session_factory, clock):
    entries = FlowEntryHandler(clock=clock)
    with pytest.raises(EntityNotFoundError):
        _run(session_factory, entries.create, "user-1", "entry-1", {"flow_id": "nope", "date": "2024-01-01"}, {})


def test_flow_entry_create_dedupes_by_flow_and_date(session_factory, flows, clock):
    entries = FlowEntryHandler(clock=clock)
    _seed_flow(session_factory, flows)
    payload = {"flow_id": "flow-1", "date": "2024-01-01", "status": "done"}

    assert _run(session_factory, entries.create, "user-1", "entry-1", payload, {})["status"] == "created"
    second = _run(
        session_factory,
        entries.create,
        "user-1",
        "entry-2",
        {**payload, "status": "missed", "note": "rain"},
        {},
    )

    assert second == {"id": "entry-1", "status": "updated"}
    with session_factory() as session:
        rows = session.exec(select(FlowEntry)).all()
        assert [(row.id, row.status, row.note) for row in rows] == [("entry-1", "missed", "rain")]


def test_profile_is_keyed_by_user(session_factory, clock):
    profiles = UserProfileHandler(clock=clock)
    _run(session_factory, profiles.create, "user-1", "p-1", {"display_name": "Sam"}, {})
    again = _run(session_factory, profiles.create, "user-1", "p-2", {"bio": "hi"}, {})
    updated = _run(session_factory, profiles.update, "user-1", "ignored", {"profile_theme": {"accent": "teal"}}, {})

    assert again == {"id": "p-1", "status": "updated"}
    assert updated["id"] == "p-1"
    with session_factory() as session:
        profile = session.exec(select(UserProfile)).one()
        assert (profile.display_name, profile.bio, profile.profile_theme) == ("Sam", "hi", {"accent": "teal"})


def test_settings_updates_merge_keys(session_factory, clock):
    handler = UserSettingsHandler(clock=clock)
    _run(session_factory, handler.create, "user-1", "s-1", {"settings": {"theme": "light", "language": "en"}}, {})
    _run(session_factory, handler.update, "user-1", "s-1", {"theme": "dark"}, {})

    with session_factory() as session:
        stored = session.exec(select(UserSettings)).one()
        assert stored.settings == {"theme": "dark", "language": "en"}


def _stale_metadata(base):
    return {"base_updated_at": base.isoformat()}


def test_stale_flow_title_update_keeps_local_title(session_factory, flows, clock):
    base = clock()
    _seed_flow(session_factory, flows)
    clock.advance(hours=1)
    _run(session_factory, flows.update, "user-1", "flow-1", {"description": "server edit"}, {})

    result = _run(
        session_factory, flows.update, "user-1", "flow-1", {"title": "Read daily"}, _stale_metadata(base)
    )

    assert result["resolution"] == "merge"
    with session_factory() as session:
        flow = session.get(Flow, "flow-1")
        assert flow.title == "Read daily"
        assert flow.description == "server edit"


def test_stale_flow_entry_update_takes_newer_local_status(session_factory, flows, clock):
    entries = FlowEntryHandler(clock=clock)
    _seed_flow(session_factory, flows)
    payload = {"flow_id": "flow-1", "date": "2024-01-01", "status": "pending"}
    _run(session_factory, entries.create, "user-1", "entry-1", payload, {})
    base = clock()
    clock.advance(minutes=10)
    _run(session_factory, entries.update, "user-1", "entry-1", {"status": "missed", "note": "server"}, {})

    # edited offline after the server change, but based on the older copy
    local_edit = clock.advance(minutes=5)
    metadata = {**_stale_metadata(base), "client_updated_at": local_edit.isoformat()}
    result = _run(session_factory, entries.update, "user-1", "entry-1", {"status": "done"}, metadata)

    assert result["resolution"] == "merge"
    with session_factory() as session:
        entry = session.get(FlowEntry, "entry-1")
        assert entry.status == "done"
        assert entry.note == "server"


def test_stale_flow_entry_update_keeps_newer_server_status(session_factory, flows, clock):
    entries = FlowEntryHandler(clock=clock)
    _seed_flow(session_factory, flows)
    _run(session_factory, entries.create, "user-1", "entry-1", {"flow_id": "flow-1", "date": "2024-01-01"}, {})
    base = clock()
    local_edit = clock.advance(minutes=1)
    clock.advance(minutes=10)
    _run(session_factory, entries.update, "user-1", "entry-1", {"status": "missed"}, {})

    metadata = {**_stale_metadata(base), "client_updated_at": local_edit.isoformat()}
    _run(session_factory, entries.update, "user-1", "entry-1", {"status": "done", "note": "late"}, metadata)

    with session_factory() as session:
        entry = session.get(FlowEntry, "entry-1")
        assert entry.status == "missed"
        assert entry.note == "late"


def test_stale_profile_update_keeps_local_display_name(session_factory, clock):
    profiles = UserProfileHandler(clock=clock)
    _run(session_factory, profiles.create, "user-1", "p-1", {"display_name": "Sam", "bio": "old"}, {})
    base = clock()
    clock.advance(hours=1)
    _run(session_factory, profiles.update, "user-1", "p-1", {"bio": "server bio", "profile_theme": {"accent": "teal"}}, {})

    result = _run(
        session_factory, profiles.update, "user-1", "p-1", {"display_name": "Samira", "bio": "local"}, _stale_metadata(base)
    )

    assert result["resolution"] == "merge"
    with session_factory() as session:
        profile = session.exec(select(UserProfile)).one()
        assert profile.display_name == "Samira"
        assert profile.bio == "server bio"
        assert profile.profile_theme == {"accent": "teal"}


def test_stale_flat_settings_update_keeps_local_keys(session_factory, clock):
    handler = UserSettingsHandler(clock=clock)
    _run(session_factory, handler.create, "user-1", "s-1", {"settings": {"theme": "light"}}, {})
    base = clock()
    clock.advance(hours=1)
    _run(session_factory, handler.update, "user-1", "s-1", {"language": "en"}, {})

    result = _run(session_factory, handler.update, "user-1", "s-1", {"theme": "dark"}, _stale_metadata(base))

    assert result["resolution"] == "merge"
    with session_factory() as session:
        stored = session.exec(select(UserSettings)).one()
        assert stored.settings == {"theme": "dark", "language": "en"}


def test_stale_nested_settings_update_keeps_local_keys(session_factory, clock):
    handler = UserSettingsHandler(clock=clock)
    _run(session_factory, handler.create, "user-1", "s-1", {"settings": {"theme": "light"}}, {})
    base = clock()
    clock.advance(hours=1)
    _run(session_factory, handler.update, "user-1", "s-1", {"settings": {"language": "en"}}, {})

    _run(
        session_factory, handler.update, "user-1", "s-1", {"settings": {"theme": "dark", "reminders": False}}, _stale_metadata(base)
    )

    with session_factory() as session:
        stored = session.exec(select(UserSettings)).one()
        assert stored.settings == {"theme": "dark", "language": "en", "reminders": False}
