import json
import random
import string
from collections import namedtuple
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .errors import ArenaError, InvalidTransition, PrizesAlreadyDistributed
from .ledger import adjust_balance, atomic, notify, record_transaction
from .models import (
    STATUS_COMPLETED,
    STATUS_LIVE,
    STATUS_UPCOMING,
    Tournament,
    TournamentResult,
    User,
)

# --- Status machine: upcoming -> live -> completed ---
NEXT_STATUS = {
    STATUS_UPCOMING: STATUS_LIVE,
    STATUS_LIVE: STATUS_COMPLETED,
}
GO_LIVE_LEAD = timedelta(minutes=10)
LIVE_DURATION = timedelta(hours=2)

ROOM_ID_RANGE = (100000000, 999999999)
ROOM_PASSWORD_ALPHABET = string.ascii_uppercase + string.digits
ROOM_PASSWORD_LENGTH = 6

# Share of the prize pool per place as (numerator, denominator)
PLACE_SHARES = ((1, 1), (1, 2), (1, 4))

# Who receives kills x kill_reward
KILL_REWARD_PLACED = 'placed'
KILL_REWARD_ALL = 'all'
KILL_REWARD_POLICIES = (KILL_REWARD_PLACED, KILL_REWARD_ALL)

Payout = namedtuple('Payout', 'player position placed prize kill_reward')

_system_random = random.SystemRandom()


def in_go_live_window(t: Tournament, now: datetime) -> bool:
    if not t.start_time:
        return False
    return t.start_time - GO_LIVE_LEAD <= now < t.start_time


def is_due_for_completion(t: Tournament, now: datetime) -> bool:
    if not t.live_at:
        return False
    return now >= t.live_at + LIVE_DURATION


def generate_room_id(rng=None) -> str:
    rng = rng or _system_random
    return str(rng.randint(*ROOM_ID_RANGE))


def generate_room_password(rng=None) -> str:
    rng = rng or _system_random
    return ''.join(rng.choice(ROOM_PASSWORD_ALPHABET) for _ in range(ROOM_PASSWORD_LENGTH))


def _advance(session, t, current, target, **values):
    result = session.execute(
        update(Tournament)
        .where(Tournament.id == t.id, Tournament.status == current)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    session.expire(t, ['status'] + list(values))
    if result.rowcount != 1:
        raise InvalidTransition(f'Tournament is no longer {current}.')


def go_live(session, t, now=None, rng=None):
    """Move an upcoming tournament to live and hand out room credentials."""
    now = now or datetime.utcnow()
    if t.status != STATUS_UPCOMING:
        raise InvalidTransition('Only upcoming tournaments can go live.')
    with atomic(session):
        _advance(session, t, STATUS_UPCOMING, STATUS_LIVE,
                 room_id=generate_room_id(rng),
                 room_password=generate_room_password(rng),
                 live_at=now)
        for p in t.players:
            notify(session, p.user_id, 'Room details available',
                   f'{t.title} is live. Open the tournament to see the room id and password.',
                   tournament_id=t.id)
    return t


def complete(session, t, now=None, kill_reward_policy=KILL_REWARD_PLACED):
    """Move a live tournament to completed, distributing prizes once."""
    now = now or datetime.utcnow()
    if t.status != STATUS_LIVE:
        raise InvalidTransition('Only live tournaments can be completed.')
    with atomic(session):
        _advance(session, t, STATUS_LIVE, STATUS_COMPLETED, completed_at=now)
        if t.result is None:
            _distribute(session, t, kill_reward_policy, now)
    return t


def change_status(session, t, target, now=None, kill_reward_policy=KILL_REWARD_PLACED, rng=None):
    """Manual admin transition; only the next status in the chain is allowed."""
    if NEXT_STATUS.get(t.status) != target:
        raise InvalidTransition(f'Cannot change status from {t.status} to {target}.')
    if target == STATUS_LIVE:
        return go_live(session, t, now=now, rng=rng)
    return complete(session, t, now=now, kill_reward_policy=kill_reward_policy)


def refresh_statuses(session, now=None, kill_reward_policy=KILL_REWARD_PLACED):
    """Apply the automatic transitions that are due.

    Returns ``(changed, failed)``: ``[(t, status)]`` for every tournament
    moved and ``[(t, exc)]`` for every one whose transition raised.  A
    failing tournament is rolled back on its own and the rest still move.
    """
    now = now or datetime.utcnow()
    changed = []
    failed = []
    pending = (
        session.query(Tournament)
        .filter(Tournament.status.in_([STATUS_UPCOMING, STATUS_LIVE]))
        .order_by(Tournament.id)
        .all()
    )
    for t in pending:
        try:
            if t.status == STATUS_UPCOMING and in_go_live_window(t, now):
                go_live(session, t, now=now)
                changed.append((t, STATUS_LIVE))
            elif t.status == STATUS_LIVE and is_due_for_completion(t, now):
                complete(session, t, now=now, kill_reward_policy=kill_reward_policy)
                changed.append((t, STATUS_COMPLETED))
        except InvalidTransition:
            # another request moved it first
            continue
        except ArenaError as exc:
            failed.append((t, exc))
    return changed, failed


# --- Prize distribution ---

def rank_participants(players):
    """Order by kills, most first; equal kills keep join order."""
    by_join = sorted(players, key=lambda p: (p.joined_at or datetime.min, p.id or 0))
    return sorted(by_join, key=lambda p: p.kills or 0, reverse=True)


def place_prize(prize_pool: int, position: int) -> int:
    if position < 1 or position > len(PLACE_SHARES):
        return 0
    num, den = PLACE_SHARES[position - 1]
    return (prize_pool or 0) * num // den


def plan_payouts(t, players, kill_reward_policy=KILL_REWARD_PLACED):
    if kill_reward_policy not in KILL_REWARD_POLICIES:
        raise ValueError(f'unknown kill reward policy {kill_reward_policy!r}')
    payouts = []
    for position, p in enumerate(rank_participants(players), start=1):
        placed = position <= len(PLACE_SHARES)
        kill_bonus = 0
        if placed or kill_reward_policy == KILL_REWARD_ALL:
            kill_bonus = (p.kills or 0) * (t.kill_reward or 0)
        payouts.append(Payout(p, position, placed, place_prize(t.prize_pool, position), kill_bonus))
    return payouts


def _distribute(session, t, kill_reward_policy, now):
    if t.result is not None:
        raise PrizesAlreadyDistributed()
    players = list(t.players)
    winners = []
    for payout in plan_payouts(t, players, kill_reward_policy):
        p = payout.player
        p.placement = payout.position
        total = payout.prize + payout.kill_reward
        if total:
            adjust_balance(session, p.user_id, total)
        if payout.prize:
            record_transaction(session, p.user_id, 'tournament_winning', payout.prize,
                               tournament_id=t.id, note=f'{t.title} #{payout.position}', now=now)
        if payout.kill_reward:
            record_transaction(session, p.user_id, 'kill_reward', payout.kill_reward,
                               tournament_id=t.id, note=f'{p.kills} kills', now=now)
        if payout.placed:
            winners.append({
                'user_id': p.user_id,
                'name': p.user.name if p.user else None,
                'position': payout.position,
                'prize': payout.prize,
                'kills': p.kills or 0,
                'kill_reward': payout.kill_reward,
            })
        session.execute(
            update(User)
            .where(User.id == p.user_id)
            .values(
                kills=User.kills + (p.kills or 0),
                matches=User.matches + 1,
                wins=User.wins + (1 if payout.position == 1 else 0),
            )
            .execution_options(synchronize_session=False)
        )
        if p.user is not None:
            session.expire(p.user, ['kills', 'matches', 'wins'])
        notify(session, p.user_id, 'Results published',
               f'{t.title} finished. Your position: #{payout.position}.', tournament_id=t.id)
    result = TournamentResult(
        tournament_id=t.id,
        total_players=len(players),
        winners=json.dumps(winners),
        calculated_at=now,
    )
    session.add(result)
    try:
        session.flush()
    except IntegrityError:
        raise PrizesAlreadyDistributed()
    return result


def distribute_prizes(session, t, kill_reward_policy=KILL_REWARD_PLACED, now=None):
    """Pay out a completed tournament. A second call raises PrizesAlreadyDistributed."""
    now = now or datetime.utcnow()
    if t.status != STATUS_COMPLETED:
        raise InvalidTransition('Prizes are distributed when a tournament completes.')
    with atomic(session):
        return _distribute(session, t, kill_reward_policy, now)
