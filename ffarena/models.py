from .app import db
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy import UniqueConstraint
import os
import hashlib
import json

ROLE_USER = 'user'
ROLE_ADMIN = 'admin'
ROLES = (ROLE_USER, ROLE_ADMIN)

MODE_SOLO = 'solo'
MODE_DUO = 'duo'
MODES = (MODE_SOLO, MODE_DUO)

STATUS_UPCOMING = 'upcoming'
STATUS_LIVE = 'live'
STATUS_COMPLETED = 'completed'
TOURNAMENT_STATUSES = (STATUS_UPCOMING, STATUS_LIVE, STATUS_COMPLETED)

REQUEST_PENDING = 'pending'
REQUEST_APPROVED = 'approved'
REQUEST_REJECTED = 'rejected'

# Ledger entry kinds and their display labels
TRANSACTION_KINDS = {
    'recharge_request': 'Recharge',
    'withdrawal_request': 'Withdrawal',
    'recharge': 'Recharge',
    'withdrawal': 'Withdrawal',
    'tournament_entry': 'Tournament Entry',
    'tournament_winning': 'Tournament Winning',
    'kill_reward': 'Kill Reward',
    'admin_added': 'Admin Added',
}

PAYMENT_METHODS = {
    'bkash': 'bKash',
    'nagad': 'Nagad',
    'rocket': 'Rocket',
}

DEFAULT_MIN_WITHDRAWAL = 200


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(20), nullable=True)
    ffid = db.Column(db.String(20), nullable=True)  # in-game id
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)
    balance = db.Column(db.Integer, nullable=False, default=0)
    # overrides UserMixin.is_active so Flask-Login refuses deactivated accounts
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    kills = db.Column(db.Integer, nullable=False, default=0)
    wins = db.Column(db.Integer, nullable=False, default=0)
    matches = db.Column(db.Integer, nullable=False, default=0)
    password_hash = db.Column(db.Text, nullable=True)
    salt = db.Column(db.String(32), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    def set_password(self, pw):
        self.salt = os.urandom(16).hex()
        self.password_hash = hashlib.sha256((self.salt + pw).encode()).hexdigest()

    def check_password(self, pw):
        if not self.password_hash or not self.salt:
            return False
        return self.password_hash == hashlib.sha256((self.salt + pw).encode()).hexdigest()


class Tournament(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    mode = db.Column(db.String(10), nullable=False, default=MODE_SOLO)
    entry_fee = db.Column(db.Integer, nullable=False, default=0)
    prize_pool = db.Column(db.Integer, nullable=False, default=0)
    kill_reward = db.Column(db.Integer, nullable=False, default=0)
    max_players = db.Column(db.Integer, nullable=True)
    # Scheduled start, naive UTC
    start_time = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_UPCOMING)
    joined_players = db.Column(db.Integer, nullable=False, default=0)
    room_id = db.Column(db.String(9), nullable=True)
    room_password = db.Column(db.String(6), nullable=True)
    live_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'), nullable=True)

    created_by = db.relationship('User', foreign_keys=[created_by_id])

    def entry_fee_for(self, play_mode):
        """Entry fee for ``play_mode``; duo play in a duo tournament pays for two."""
        if self.mode == MODE_DUO and play_mode == MODE_DUO:
            return self.entry_fee * 2
        return self.entry_fee

    def is_full(self):
        return bool(self.max_players) and self.joined_players >= self.max_players

    def player_for(self, user_id):
        for p in self.players:
            if p.user_id == user_id:
                return p
        return None


class TournamentPlayer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    play_mode = db.Column(db.String(10), nullable=False, default=MODE_SOLO)
    entry_paid = db.Column(db.Integer, nullable=False, default=0)
    kills = db.Column(db.Integer, nullable=False, default=0)
    placement = db.Column(db.Integer, nullable=True)
    partner_name = db.Column(db.String(120), nullable=True)
    partner_ffid = db.Column(db.String(20), nullable=True)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('players', cascade='all, delete-orphan',
                           order_by='TournamentPlayer.joined_at')
    )
    user = db.relationship(
        'User',
        backref=db.backref('tournament_entries', cascade='all, delete-orphan')
    )

    __table_args__ = (UniqueConstraint('tournament_id', 'user_id', name='_tournament_user_uc'),)


class TournamentResult(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False, unique=True)
    total_players = db.Column(db.Integer, nullable=False, default=0)
    winners = db.Column(db.Text, nullable=False, default='[]')  # JSON list of winner entries
    calculated_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('result', uselist=False, cascade='all, delete-orphan')
    )

    def winner_entries(self):
        try:
            return json.loads(self.winners or '[]')
        except ValueError:
            return []


class Transaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    kind = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # positive credit, negative debit
    status = db.Column(db.String(20), nullable=False, default='completed')
    method = db.Column(db.String(20), nullable=True)
    tournament_id = db.Column(db.Integer, nullable=True)  # kept after tournament deletion
    note = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship(
        'User',
        backref=db.backref('transactions', cascade='all, delete-orphan',
                           order_by='Transaction.created_at.desc()')
    )

    @property
    def label(self):
        return TRANSACTION_KINDS.get(self.kind, self.kind)


class RechargeRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(20), nullable=False)
    sender_number = db.Column(db.String(20), nullable=True)
    reference = db.Column(db.String(100), nullable=False)  # payment provider transaction id
    status = db.Column(db.String(20), nullable=False, default=REQUEST_PENDING)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    decided_at = db.Column(db.DateTime, nullable=True)
    decided_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'), nullable=True)
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey('transaction.id', ondelete='SET NULL'), nullable=True)

    user = db.relationship(
        'User',
        foreign_keys=[user_id],
        backref=db.backref('recharge_requests', cascade='all, delete-orphan')
    )
    decided_by = db.relationship('User', foreign_keys=[decided_by_id])
    ledger_entry = db.relationship('Transaction', foreign_keys=[ledger_entry_id])


class WithdrawRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(20), nullable=False)
    account_number = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=REQUEST_PENDING)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    decided_at = db.Column(db.DateTime, nullable=True)
    decided_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'), nullable=True)
    ledger_entry_id = db.Column(db.Integer, db.ForeignKey('transaction.id', ondelete='SET NULL'), nullable=True)

    user = db.relationship(
        'User',
        foreign_keys=[user_id],
        backref=db.backref('withdraw_requests', cascade='all, delete-orphan')
    )
    decided_by = db.relationship('User', foreign_keys=[decided_by_id])
    ledger_entry = db.relationship('Transaction', foreign_keys=[ledger_entry_id])


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    tournament_id = db.Column(db.Integer, nullable=True)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship(
        'User',
        backref=db.backref('notifications', cascade='all, delete-orphan',
                           order_by='Notification.created_at.desc()')
    )


class Notice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    created_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'), nullable=True)


class AppConfig(db.Model):
    key = db.Column(db.String(50), primary_key=True)
    value = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SiteLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)
    # relationship loaded manually to avoid cross-db foreign key


class TournamentLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)
