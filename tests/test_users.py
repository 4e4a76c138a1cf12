from ffarena.access import (
    admin_code_configured,
    landing_endpoint,
    min_withdrawal,
    set_admin_code,
    set_setting,
    valid_email,
    valid_ffid,
    valid_phone,
    verify_admin_code,
)
from ffarena.models import AppConfig, SiteLog, User


def test_user_crud(session):
    # create
    u = User(email='test@example.com', name='Test', ffid='12345678')
    u.set_password('secret')
    session.add(u)
    session.commit()

    fetched = session.query(User).filter_by(email='test@example.com').one()
    assert fetched.check_password('secret')
    assert not fetched.check_password('wrong')
    assert fetched.role == 'user'
    assert fetched.balance == 0
    assert fetched.is_active

    # modify
    fetched.name = 'Updated'
    session.commit()
    assert session.get(User, fetched.id).name == 'Updated'

    # delete
    session.delete(fetched)
    session.commit()
    assert session.query(User).count() == 0


def test_landing_pages(make_user):
    assert landing_endpoint(make_user()) == 'dashboard'
    assert landing_endpoint(make_user(role='admin')) == 'admin_dashboard'


def test_registration_field_checks():
    assert valid_email('a@b.co')
    assert not valid_email('not-an-email')
    assert valid_ffid('123456')
    assert not valid_ffid('12345')
    assert not valid_ffid('1' * 21)
    assert valid_phone('01711111111')
    assert not valid_phone('12ab')


def test_admin_code_stored_as_hash(session):
    assert not admin_code_configured(session)
    assert not verify_admin_code(session, 'anything')

    set_admin_code(session, 'letmein1')
    session.commit()

    assert admin_code_configured(session)
    assert verify_admin_code(session, 'letmein1')
    assert not verify_admin_code(session, 'letmein2')
    assert not verify_admin_code(session, '')
    stored = {row.key: row.value for row in session.query(AppConfig).all()}
    assert 'letmein1' not in stored.values()


def test_min_withdrawal_setting(session):
    assert min_withdrawal(session) == 200
    assert min_withdrawal(session, 300) == 300
    set_setting(session, 'min_withdrawal', 500)
    session.commit()
    assert min_withdrawal(session) == 500


def register_form(**overrides):
    form = {
        'name': 'New Player',
        'email': 'new@example.com',
        'phone': '',
        'ffid': '55554444',
        'password': 'secret1',
        'password_confirm': 'secret1',
        'role': 'user',
    }
    form.update(overrides)
    return form


def test_register_player(client, session):
    resp = client.post('/register', data=register_form())
    assert resp.status_code == 302
    assert resp.headers['Location'].endswith('/dashboard')
    u = session.query(User).filter_by(email='new@example.com').one()
    assert u.role == 'user'
    assert u.check_password('secret1')


def test_register_rejects_bad_input(client, session):
    resp = client.post('/register', data=register_form(password_confirm='other1'))
    assert resp.headers['Location'].endswith('/register')
    resp = client.post('/register', data=register_form(ffid='123'))
    assert resp.headers['Location'].endswith('/register')
    assert session.query(User).count() == 0


def test_register_admin_needs_code(client, session):
    resp = client.post('/register', data=register_form(role='admin', admin_code='guess'))
    assert resp.headers['Location'].endswith('/register')
    assert session.query(User).count() == 0
    assert session.query(SiteLog).filter_by(action='register', result='failure').count() == 1

    set_admin_code(session, 'letmein1')
    session.commit()
    resp = client.post('/register', data=register_form(role='admin', admin_code='letmein1'))
    assert resp.headers['Location'].endswith('/admin')
    assert session.query(User).filter_by(email='new@example.com').one().role == 'admin'


def test_login_lands_by_role(client, make_user, login):
    player = make_user()
    resp = login(player)
    assert resp.headers['Location'].endswith('/dashboard')
    client.get('/logout')

    boss = make_user(role='admin')
    resp = login(boss)
    assert resp.headers['Location'].endswith('/admin')


def test_bad_login(client, make_user, login):
    player = make_user()
    resp = login(player, password='wrong-password')
    assert resp.status_code == 200
    assert b'Invalid credentials' in resp.data


def test_deactivated_user_cannot_login(session, make_user, login):
    player = make_user()
    player.is_active = False
    session.commit()
    resp = login(player)
    assert resp.status_code == 200
    assert b'deactivated' in resp.data


def test_role_gating(client, make_user, login):
    resp = client.get('/dashboard')
    assert resp.status_code == 302
    assert '/login' in resp.headers['Location']

    player = make_user()
    login(player)
    resp = client.get('/admin')
    assert resp.status_code == 302
    assert resp.headers['Location'].endswith('/dashboard')
    client.get('/logout')

    boss = make_user(role='admin')
    login(boss)
    resp = client.get('/wallet')
    assert resp.headers['Location'].endswith('/admin')
    assert client.get('/admin').status_code == 200
