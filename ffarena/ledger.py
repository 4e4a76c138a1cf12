"""Balances, ledger entries and the operations that move money.

Every balance change is a single conditional ``UPDATE`` (``balance =
balance + :amount``) so two requests touching the same account never
overwrite each other.  Each public operation runs as one database
transaction via :func:`atomic`; on any failure nothing is written.
"""
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import (
    AlreadyJoined,
    ArenaError,
    InsufficientBalance,
    RequestAlreadyProcessed,
    StateError,
    TournamentFull,
    TournamentNotFound,
    TournamentNotOpen,
    TransportError,
    ValidationError,
)
from .models import (
    MODE_DUO,
    MODE_SOLO,
    MODES,
    PAYMENT_METHODS,
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    STATUS_UPCOMING,
    Notification,
    RechargeRequest,
    Tournament,
    TournamentPlayer,
    Transaction,
    User,
    WithdrawRequest,
)


@contextmanager
def atomic(session):
    """Commit on success; roll back and re-raise on any failure."""
    try:
        yield session
        session.commit()
    except ArenaError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransportError() from exc
    except Exception:
        session.rollback()
        raise


def parse_amount(value, field='Amount', minimum=1):
    try:
        amount = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a whole number.')
    if amount < minimum:
        raise ValidationError(f'{field} must be at least {minimum}.')
    return amount


def adjust_balance(session, user_id, amount, floor=None):
    """Atomically add ``amount`` (may be negative) to an account balance.

    With ``floor`` set the update only applies when the resulting balance
    stays at or above it, otherwise :class:`InsufficientBalance` is raised.
    """
    user = session.get(User, user_id)
    if user is None:
        raise ValidationError('Account not found.')
    stmt = (
        update(User)
        .where(User.id == user_id)
        .values(balance=User.balance + amount)
        .execution_options(synchronize_session=False)
    )
    if floor is not None:
        stmt = stmt.where(User.balance + amount >= floor)
    result = session.execute(stmt)
    session.expire(user, ['balance'])
    if result.rowcount != 1:
        raise InsufficientBalance()
    return user


def record_transaction(session, user_id, kind, amount, status='completed',
                       method=None, tournament_id=None, note=None, now=None):
    entry = Transaction(
        user_id=user_id,
        kind=kind,
        amount=amount,
        status=status,
        method=method,
        tournament_id=tournament_id,
        note=note,
        created_at=now or datetime.utcnow(),
    )
    session.add(entry)
    return entry


def notify(session, user_id, title, message, tournament_id=None):
    n = Notification(user_id=user_id, title=title, message=message, tournament_id=tournament_id)
    session.add(n)
    return n


# ---------- Tournament entry ----------

def join_tournament(session, tournament_id, user, play_mode=MODE_SOLO,
                    partner_name=None, partner_ffid=None, now=None):
    """Join ``user`` to a tournament, charging the entry fee.

    Checks run in a fixed order and the first failure wins: the tournament
    exists, it is upcoming, the user has not joined yet, there is room, and
    the balance covers the fee.
    """
    now = now or datetime.utcnow()
    play_mode = (play_mode or MODE_SOLO).strip().lower()
    if play_mode not in MODES:
        raise ValidationError('Unknown play mode.')
    t = session.get(Tournament, tournament_id)
    if t is None:
        raise TournamentNotFound()
    if play_mode == MODE_DUO:
        if t.mode != MODE_DUO:
            raise ValidationError('This tournament does not allow duo entries.')
        partner_name = (partner_name or '').strip()
        partner_ffid = (partner_ffid or '').strip()
        if not partner_name or not partner_ffid:
            raise ValidationError('Please fill partner details for duo mode.')
    else:
        partner_name = partner_ffid = None
    if t.status != STATUS_UPCOMING:
        raise TournamentNotOpen()
    if session.query(TournamentPlayer).filter_by(tournament_id=t.id, user_id=user.id).first():
        raise AlreadyJoined()
    if t.is_full():
        raise TournamentFull()
    fee = t.entry_fee_for(play_mode)
    session.refresh(user, ['balance'])
    if user.balance < fee:
        raise InsufficientBalance()

    with atomic(session):
        tp = TournamentPlayer(
            tournament_id=t.id,
            user_id=user.id,
            play_mode=play_mode,
            entry_paid=fee,
            partner_name=partner_name,
            partner_ffid=partner_ffid,
            joined_at=now,
        )
        session.add(tp)
        try:
            session.flush()
        except IntegrityError:
            raise AlreadyJoined()
        stmt = (
            update(Tournament)
            .where(Tournament.id == t.id, Tournament.status == STATUS_UPCOMING)
            .values(joined_players=Tournament.joined_players + 1)
            .execution_options(synchronize_session=False)
        )
        if t.max_players:
            stmt = stmt.where(Tournament.joined_players < t.max_players)
        if session.execute(stmt).rowcount != 1:
            raise TournamentFull() if t.max_players else TournamentNotOpen()
        session.expire(t, ['joined_players', 'status'])
        adjust_balance(session, user.id, -fee, floor=0)
        record_transaction(session, user.id, 'tournament_entry', -fee,
                           tournament_id=t.id, note=f'{t.title} ({play_mode})', now=now)
    return tp


# ---------- Recharge / withdraw requests ----------

def _check_method(method):
    method = (method or '').strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError('Choose a payment method.')
    return method


def submit_recharge(session, user, amount, method, reference, sender_number=None, now=None):
    amount = parse_amount(amount)
    method = _check_method(method)
    reference = (reference or '').strip()
    if not reference:
        raise ValidationError('Payment transaction id is required.')
    with atomic(session):
        entry = record_transaction(session, user.id, 'recharge_request', amount,
                                   status=REQUEST_PENDING, method=method, now=now)
        req = RechargeRequest(
            user_id=user.id,
            amount=amount,
            method=method,
            reference=reference,
            sender_number=(sender_number or '').strip() or None,
            ledger_entry=entry,
            created_at=now or datetime.utcnow(),
        )
        session.add(req)
    return req


def submit_withdrawal(session, user, amount, method, account_number, minimum, now=None):
    """Create a pending withdrawal request.

    The balance is checked here only; nothing is reserved, so approval may
    later overdraw an account that spent the money in between.
    """
    amount = parse_amount(amount)
    if amount < minimum:
        raise ValidationError(f'Minimum withdrawal amount is ৳{minimum}.')
    method = _check_method(method)
    account_number = (account_number or '').strip()
    if not account_number:
        raise ValidationError('Account number is required.')
    session.refresh(user, ['balance'])
    if user.balance < amount:
        raise InsufficientBalance()
    with atomic(session):
        entry = record_transaction(session, user.id, 'withdrawal_request', -amount,
                                   status=REQUEST_PENDING, method=method, now=now)
        req = WithdrawRequest(
            user_id=user.id,
            amount=amount,
            method=method,
            account_number=account_number,
            ledger_entry=entry,
            created_at=now or datetime.utcnow(),
        )
        session.add(req)
    return req


def _decide(session, model, request_id, admin, status, now):
    req = session.get(model, request_id)
    if req is None:
        raise ValidationError('Request not found.')
    result = session.execute(
        update(model)
        .where(model.id == request_id, model.status == REQUEST_PENDING)
        .values(status=status, decided_at=now, decided_by_id=admin.id)
        .execution_options(synchronize_session=False)
    )
    session.expire(req, ['status', 'decided_at', 'decided_by_id'])
    if result.rowcount != 1:
        raise RequestAlreadyProcessed()
    if req.ledger_entry is not None:
        req.ledger_entry.status = status
    return req


def approve_recharge(session, request_id, admin, now=None):
    now = now or datetime.utcnow()
    with atomic(session):
        req = _decide(session, RechargeRequest, request_id, admin, REQUEST_APPROVED, now)
        adjust_balance(session, req.user_id, req.amount)
        record_transaction(session, req.user_id, 'recharge', req.amount,
                           status=REQUEST_APPROVED, method=req.method, now=now)
        notify(session, req.user_id, 'Recharge approved',
               f'৳{req.amount} has been added to your balance.')
    return req


def reject_recharge(session, request_id, admin, now=None):
    now = now or datetime.utcnow()
    with atomic(session):
        req = _decide(session, RechargeRequest, request_id, admin, REQUEST_REJECTED, now)
        notify(session, req.user_id, 'Recharge rejected',
               f'Your recharge request of ৳{req.amount} was rejected.')
    return req


def approve_withdrawal(session, request_id, admin, now=None):
    """Approve a withdrawal and debit the account.

    Returns ``(request, overdraft)`` where ``overdraft`` is true when the
    balance no longer covered the amount at approval time.
    """
    now = now or datetime.utcnow()
    with atomic(session):
        req = _decide(session, WithdrawRequest, request_id, admin, REQUEST_APPROVED, now)
        user = session.get(User, req.user_id)
        session.refresh(user, ['balance'])
        overdraft = user.balance < req.amount
        adjust_balance(session, req.user_id, -req.amount)
        record_transaction(session, req.user_id, 'withdrawal', -req.amount,
                           status=REQUEST_APPROVED, method=req.method,
                           note='overdraft' if overdraft else None, now=now)
        notify(session, req.user_id, 'Withdrawal paid',
               f'৳{req.amount} has been sent to your {PAYMENT_METHODS[req.method]} account.')
    return req, overdraft


def reject_withdrawal(session, request_id, admin, now=None):
    now = now or datetime.utcnow()
    with atomic(session):
        req = _decide(session, WithdrawRequest, request_id, admin, REQUEST_REJECTED, now)
        notify(session, req.user_id, 'Withdrawal rejected',
               f'Your withdrawal request of ৳{req.amount} was rejected.')
    return req


def admin_set_balance(session, user_id, new_balance, admin, now=None):
    new_balance = parse_amount(new_balance, field='Balance', minimum=0)
    with atomic(session):
        user = session.get(User, user_id)
        if user is None:
            raise ValidationError('User not found.')
        session.refresh(user, ['balance'])
        current = user.balance
        delta = new_balance - current
        if delta == 0:
            return user
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.balance == current)
            .values(balance=new_balance)
            .execution_options(synchronize_session=False)
        )
        session.expire(user, ['balance'])
        if result.rowcount != 1:
            raise StateError('Balance changed meanwhile, reload and try again.')
        record_transaction(session, user_id, 'admin_added', delta,
                           note=f'set by {admin.name}', now=now)
    return user
