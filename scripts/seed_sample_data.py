#!/usr/bin/env python
"""Populate the development database with demo players, tournaments and wallet activity."""
from __future__ import annotations

import argparse
from datetime import datetime, timedelta
from typing import Sequence

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ffarena.app import create_app, db
from ffarena import ledger, lifecycle, models
from ffarena.access import admin_code_configured, set_admin_code


def ensure_admin_user() -> models.User:
    admin = models.User.query.filter_by(email="admin@example.com").first()
    if admin is None:
        admin = models.User(
            email="admin@example.com",
            name="Admin User",
            role=models.ROLE_ADMIN,
        )
        admin.set_password("admin123")
        db.session.add(admin)
        db.session.commit()
    return admin


def create_user(name: str, email: str, ffid: str, balance: int, password: str = "player123") -> models.User:
    user = models.User.query.filter_by(email=email).first()
    if user is None:
        user = models.User(name=name, email=email, ffid=ffid, balance=balance)
        user.set_password(password)
        db.session.add(user)
    return user


def ensure_tournament(title: str, mode: str, fee: int, pool: int, kill_reward: int,
                      start_time: datetime, max_players: int | None = None) -> models.Tournament:
    tournament = models.Tournament.query.filter_by(title=title).first()
    if tournament is None:
        tournament = models.Tournament(title=title)
    tournament.mode = mode
    tournament.entry_fee = fee
    tournament.prize_pool = pool
    tournament.kill_reward = kill_reward
    tournament.max_players = max_players
    tournament.start_time = start_time
    db.session.add(tournament)
    db.session.commit()
    return tournament


def join_all(tournament: models.Tournament, users: Sequence[models.User], play_mode: str = models.MODE_SOLO) -> None:
    for user in users:
        if tournament.player_for(user.id) is not None:
            continue
        ledger.join_tournament(
            db.session, tournament.id, user, play_mode=play_mode,
            partner_name="Partner" if play_mode == models.MODE_DUO else None,
            partner_ffid="99887766" if play_mode == models.MODE_DUO else None,
        )


def build_sample_world(reset: bool = False) -> None:
    if reset:
        db.drop_all()
        db.create_all()
    admin = ensure_admin_user()
    if not admin_code_configured(db.session):
        set_admin_code(db.session, "arena-admin")
        db.session.commit()

    player_details = [
        ("Rafi Ahmed", "rafi@example.com", "51234567"),
        ("Nusrat Jahan", "nusrat@example.com", "51234568"),
        ("Tanvir Hasan", "tanvir@example.com", "51234569"),
        ("Sadia Islam", "sadia@example.com", "51234570"),
        ("Arif Khan", "arif@example.com", "51234571"),
        ("Mim Akter", "mim@example.com", "51234572"),
    ]
    players = [create_user(name, email, ffid, 500) for name, email, ffid in player_details]
    db.session.commit()

    now = datetime.utcnow()
    evening = ensure_tournament("Evening Solo Clash", models.MODE_SOLO, 20, 1000, 5,
                                now + timedelta(hours=3), max_players=48)
    duo = ensure_tournament("Duo Night", models.MODE_DUO, 30, 2000, 10,
                            now + timedelta(days=1))
    finished = ensure_tournament("Morning Scrim", models.MODE_SOLO, 10, 300, 2,
                                 now - timedelta(hours=4))

    join_all(evening, players[:4])
    join_all(duo, players[2:5], play_mode=models.MODE_DUO)
    join_all(finished, players)

    if finished.status == models.STATUS_UPCOMING:
        lifecycle.go_live(db.session, finished, now=now - timedelta(hours=3))
        for kills, entry in zip((7, 4, 3, 1, 0, 2), finished.players):
            entry.kills = kills
        db.session.commit()
        lifecycle.complete(db.session, finished, now=now - timedelta(hours=1))

    if models.RechargeRequest.query.count() == 0:
        ledger.submit_recharge(db.session, players[0], 250, "bkash", "8N7A6B5C4D", "01711111111")
        ledger.submit_withdrawal(db.session, players[1], 200, "nagad", "01822222222",
                                 minimum=models.DEFAULT_MIN_WITHDRAWAL)

    if models.Notice.query.count() == 0:
        db.session.add(models.Notice(
            title="Welcome to FF Arena",
            body="Recharge with bKash, Nagad or Rocket and join tonight's matches.",
            created_by_id=admin.id,
        ))
        db.session.commit()

    print("Database populated with demo content.")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="drop and recreate the database before loading data")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        build_sample_world(reset=args.reset)


if __name__ == "__main__":
    main()
