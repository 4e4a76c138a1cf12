import random
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from ffarena.lifecycle import (
    ROOM_PASSWORD_ALPHABET,
    change_status,
    complete,
    generate_room_id,
    generate_room_password,
    go_live,
    in_go_live_window,
    is_due_for_completion,
    refresh_statuses,
)
from ffarena.ledger import join_tournament
from ffarena import lifecycle
from ffarena.errors import InvalidTransition, TransportError
from ffarena.models import Notification, Tournament, TournamentResult


NOW = datetime(2024, 5, 1, 18, 0, 0)


def test_go_live_window(make_tournament):
    t = make_tournament(start_time=NOW + timedelta(minutes=5))
    assert in_go_live_window(t, NOW)
    assert in_go_live_window(t, NOW + timedelta(minutes=-5))
    assert not in_go_live_window(t, NOW - timedelta(minutes=6))
    # once the start time passes the window is closed
    assert not in_go_live_window(t, NOW + timedelta(minutes=5))
    assert not in_go_live_window(t, NOW + timedelta(hours=1))


def test_completion_due_after_two_hours(make_tournament):
    t = make_tournament(status='live', live_at=NOW)
    assert not is_due_for_completion(t, NOW + timedelta(hours=1, minutes=59))
    assert is_due_for_completion(t, NOW + timedelta(hours=2))


def test_room_credentials():
    rng = random.Random(7)
    room_id = generate_room_id(rng)
    assert len(room_id) == 9 and room_id.isdigit()
    password = generate_room_password(rng)
    assert len(password) == 6
    assert all(c in ROOM_PASSWORD_ALPHABET for c in password)


def test_refresh_moves_tournament_live(session, make_user, make_tournament):
    t = make_tournament(start_time=NOW + timedelta(minutes=8))
    u = make_user(balance=100)
    join_tournament(session, t.id, u, now=NOW - timedelta(hours=1))

    changed, failed = refresh_statuses(session, now=NOW)

    assert changed == [(t, 'live')]
    assert failed == []
    assert t.status == 'live'
    assert t.live_at == NOW
    assert len(t.room_id) == 9
    assert len(t.room_password) == 6
    note = session.query(Notification).filter_by(user_id=u.id).one()
    assert note.tournament_id == t.id


def test_refresh_leaves_missed_window_alone(session, make_tournament):
    t = make_tournament(start_time=NOW - timedelta(minutes=1))
    assert refresh_statuses(session, now=NOW) == ([], [])
    assert t.status == 'upcoming'


def test_refresh_completes_after_live_duration(session, make_tournament):
    due = make_tournament(title='Due', status='live', live_at=NOW - timedelta(hours=2))
    running = make_tournament(title='Running', status='live', live_at=NOW - timedelta(minutes=30))

    changed, failed = refresh_statuses(session, now=NOW)

    assert changed == [(due, 'completed')]
    assert failed == []
    assert due.status == 'completed'
    assert due.completed_at == NOW
    assert due.result is not None
    assert running.status == 'live'


def test_refresh_keeps_going_after_one_tournament_fails(session, make_user, make_tournament, monkeypatch):
    broken = make_tournament(title='Broken', start_time=NOW + timedelta(minutes=5))
    fine = make_tournament(title='Fine', start_time=NOW + timedelta(minutes=5))
    u = make_user(balance=100)
    join_tournament(session, broken.id, u, now=NOW - timedelta(hours=1))
    real_notify = lifecycle.notify

    def notify(session, user_id, title, message, tournament_id=None):
        if tournament_id == broken.id:
            raise TransportError()
        return real_notify(session, user_id, title, message, tournament_id=tournament_id)

    monkeypatch.setattr(lifecycle, 'notify', notify)

    changed, failed = refresh_statuses(session, now=NOW)

    assert changed == [(fine, 'live')]
    assert [(t, type(exc)) for t, exc in failed] == [(broken, TransportError)]
    # the status update for the failed tournament was rolled back
    assert broken.status == 'upcoming'
    assert broken.room_id is None
    assert fine.status == 'live'


def test_manual_transitions_follow_chain(session, make_tournament):
    t = make_tournament()
    with pytest.raises(InvalidTransition):
        change_status(session, t, 'completed', now=NOW)

    change_status(session, t, 'live', now=NOW, rng=random.Random(1))
    assert t.status == 'live'

    with pytest.raises(InvalidTransition):
        change_status(session, t, 'upcoming', now=NOW)

    change_status(session, t, 'completed', now=NOW)
    assert t.status == 'completed'

    for target in ('upcoming', 'live', 'completed'):
        with pytest.raises(InvalidTransition):
            change_status(session, t, target, now=NOW)


def test_go_live_loses_race(session, make_tournament):
    t = make_tournament()
    # another request already moved it
    session.execute(update(Tournament).where(Tournament.id == t.id).values(status='live')
                    .execution_options(synchronize_session=False))
    session.commit()

    with pytest.raises(InvalidTransition):
        go_live(session, t, now=NOW)
    assert session.get(Tournament, t.id).room_id is None


def test_complete_twice_pays_once(session, make_tournament):
    t = make_tournament(status='live', live_at=NOW)
    complete(session, t, now=NOW)
    with pytest.raises(InvalidTransition):
        complete(session, t, now=NOW)
    assert session.query(TournamentResult).filter_by(tournament_id=t.id).count() == 1
