from __future__ import annotations

from fleet.nodes import MemberStatus, NodeKind


def test_first_alive_update_creates_member(table, make_update):
    assert table.apply(make_update(1, sequence=5, active_calls=2, cpu_pct=30.0)) is True

    record = table.get((NodeKind.MEDIA_RELAY, 1))
    assert record is not None
    assert record.status is MemberStatus.ALIVE
    assert record.active_calls == 2
    assert record.cpu_pct == 30.0


def test_hearsay_about_unknown_member_is_ignored(table, make_update):
    assert table.apply(make_update(1, status=MemberStatus.SUSPECT)) is False
    assert table.apply(make_update(1, status=MemberStatus.DEAD)) is False
    assert len(table) == 0


def test_older_sequence_never_changes_state(table, make_update):
    table.apply(make_update(1, sequence=10, active_calls=4, cpu_pct=20.0))
    before = table.get((NodeKind.MEDIA_RELAY, 1))

    assert table.apply(make_update(1, sequence=9, active_calls=0, cpu_pct=99.0)) is False
    assert table.apply(make_update(1, sequence=3, status=MemberStatus.DEAD)) is False
    assert table.get((NodeKind.MEDIA_RELAY, 1)) == before


def test_redelivered_update_is_idempotent(table, make_update):
    update = make_update(1, sequence=7, active_calls=1)
    assert table.apply(update) is True
    snapshot = table.snapshot()

    assert table.apply(update) is False
    assert table.snapshot() == snapshot


def test_equal_sequence_only_escalates_status(table, make_update):
    table.apply(make_update(1, sequence=4, active_calls=3))

    assert table.apply(make_update(1, sequence=4, status=MemberStatus.SUSPECT, active_calls=50)) is True
    record = table.get((NodeKind.MEDIA_RELAY, 1))
    assert record.status is MemberStatus.SUSPECT
    assert record.active_calls == 3

    assert table.apply(make_update(1, sequence=4, status=MemberStatus.ALIVE)) is False
    assert table.get((NodeKind.MEDIA_RELAY, 1)).status is MemberStatus.SUSPECT


def test_newer_sequence_recovers_suspect(table, make_update):
    table.apply(make_update(1, sequence=4))
    table.suspect((NodeKind.MEDIA_RELAY, 1))

    assert table.apply(make_update(1, sequence=5, active_calls=6)) is True
    record = table.get((NodeKind.MEDIA_RELAY, 1))
    assert record.status is MemberStatus.ALIVE
    assert record.active_calls == 6


def test_probe_ack_recovers_suspect(table, make_update):
    key = (NodeKind.MEDIA_RELAY, 1)
    table.apply(make_update(1))
    assert table.suspect(key) is not None

    assert table.record_contact(key) is True
    assert table.get(key).status is MemberStatus.ALIVE


def test_suspect_only_applies_to_alive_members(table, make_update):
    key = (NodeKind.MEDIA_RELAY, 1)
    assert table.suspect(key) is None
    table.apply(make_update(1))
    assert table.suspect(key) is not None
    assert table.suspect(key) is None


def test_timers_walk_alive_suspect_dead_removed(table, clock, make_update):
    key = (NodeKind.MEDIA_RELAY, 1)
    table.apply(make_update(1, sequence=1, active_calls=2))

    clock.advance(4.0)
    assert table.expire() == []

    clock.advance(2.0)
    changed = table.expire()
    assert [record.status for record in changed] == [MemberStatus.SUSPECT]

    clock.advance(5.5)
    changed = table.expire()
    assert [record.status for record in changed] == [MemberStatus.DEAD]
    # Last known load is kept for observability.
    assert table.get(key).active_calls == 2

    clock.advance(61.0)
    assert table.expire() == []
    assert table.get(key) is None


def test_dead_member_rejoins_only_with_newer_sequence(table, make_update):
    key = (NodeKind.MEDIA_RELAY, 1)
    table.apply(make_update(1, sequence=3, active_calls=9))
    table.apply(make_update(1, sequence=3, status=MemberStatus.DEAD))
    assert table.get(key).status is MemberStatus.DEAD

    assert table.apply(make_update(1, sequence=3)) is False
    assert table.apply(make_update(1, sequence=4, status=MemberStatus.SUSPECT)) is False

    assert table.apply(make_update(1, sequence=4, active_calls=0)) is True
    record = table.get(key)
    assert record.status is MemberStatus.ALIVE
    assert record.active_calls == 0


def test_live_view_excludes_dead_and_stale_members(table, clock, make_update):
    table.apply(make_update(1, sequence=1, active_calls=1))
    table.apply(make_update(2, sequence=1, active_calls=2))
    table.apply(make_update(3, sequence=1, active_calls=3))
    table.apply(make_update(1, kind=NodeKind.SIP_ROUTER, sequence=1))

    table.suspect((NodeKind.MEDIA_RELAY, 2))
    table.apply(make_update(3, sequence=1, status=MemberStatus.DEAD))

    view = table.live_view(NodeKind.MEDIA_RELAY)
    assert sorted(view) == [1, 2]
    assert view[2].status is MemberStatus.SUSPECT

    clock.advance(11.0)
    assert table.live_view(NodeKind.MEDIA_RELAY) == {}
