import os
import sys
from datetime import datetime, timedelta

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from ffarena.app import create_app, db
from ffarena.models import User, Tournament, ROLE_ADMIN, MODE_SOLO


@pytest.fixture
def app(tmp_path, monkeypatch):
    # use temporary SQLite databases for testing
    monkeypatch.setenv("FFARENA_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("FFARENA_LOG_DB_PATH", str(tmp_path / "test_logs.db"))
    monkeypatch.delenv("FFARENA_ADMIN_CODE", raising=False)
    monkeypatch.delenv("FFARENA_MIN_WITHDRAWAL", raising=False)
    monkeypatch.delenv("FFARENA_KILL_REWARD_POLICY", raising=False)
    application = create_app()
    application.config['TESTING'] = True
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(session):
    counter = {'n': 0}

    def _make(name=None, balance=0, role='user', password='secret1', ffid='12345678'):
        counter['n'] += 1
        n = counter['n']
        u = User(
            email=f'player{n}@example.com',
            name=name or f'Player {n}',
            ffid=ffid,
            role=role,
            balance=balance,
        )
        u.set_password(password)
        session.add(u)
        session.commit()
        return u

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(name='Admin', role=ROLE_ADMIN)


@pytest.fixture
def make_tournament(session):
    def _make(**kwargs):
        fields = dict(
            title='Evening Clash',
            mode=MODE_SOLO,
            entry_fee=20,
            prize_pool=1000,
            kill_reward=5,
            start_time=datetime.utcnow() + timedelta(hours=2),
        )
        fields.update(kwargs)
        t = Tournament(**fields)
        session.add(t)
        session.commit()
        return t

    return _make


@pytest.fixture
def login(client):
    def _login(user, password='secret1'):
        return client.post('/login', data={'email': user.email, 'password': password})

    return _login
