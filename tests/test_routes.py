import random
from datetime import datetime, timedelta

from ffarena.ledger import (
    admin_set_balance,
    approve_recharge,
    join_tournament,
    submit_recharge,
    submit_withdrawal,
)
from ffarena import lifecycle
from ffarena.errors import TransportError
from ffarena.lifecycle import go_live
from ffarena.models import (
    Notice,
    Notification,
    RechargeRequest,
    SiteLog,
    Tournament,
    TournamentLog,
    User,
    WithdrawRequest,
)


def test_index_and_api_list_tournaments(client, make_tournament):
    make_tournament(title='Friday Solo')
    resp = client.get('/')
    assert resp.status_code == 200
    assert b'Friday Solo' in resp.data

    data = client.get('/api/tournaments').get_json()
    assert [t['title'] for t in data['tournaments']] == ['Friday Solo']
    assert data['tournaments'][0]['status'] == 'upcoming'


def test_join_through_client(client, session, make_user, make_tournament, login):
    u = make_user(balance=100)
    t = make_tournament(entry_fee=20)
    login(u)

    resp = client.post(f'/t/{t.id}/join', data={'play_mode': 'solo'})
    assert resp.status_code == 302
    assert session.get(User, u.id).balance == 80
    assert session.query(TournamentLog).filter_by(tournament_id=t.id, action='join').count() == 1

    resp = client.post(f'/t/{t.id}/join', data={'play_mode': 'solo'}, follow_redirects=True)
    assert b'You have already joined this tournament.' in resp.data
    assert session.get(User, u.id).balance == 80


def test_join_without_money_is_flashed(client, session, make_user, make_tournament, login):
    u = make_user(balance=5)
    t = make_tournament(entry_fee=20)
    login(u)
    resp = client.post(f'/t/{t.id}/join', data={'play_mode': 'solo'}, follow_redirects=True)
    assert b'Insufficient balance.' in resp.data
    assert session.get(Tournament, t.id).joined_players == 0
    assert session.query(SiteLog).filter_by(action='join_tournament', result='failure').count() == 1


def test_join_missing_tournament(client, make_user, login):
    login(make_user(balance=100))
    assert client.post('/t/999/join', data={'play_mode': 'solo'}).status_code == 404


def test_room_details_only_for_participants(client, session, make_user, make_tournament, login):
    t = make_tournament(entry_fee=10)
    joined = make_user(balance=50)
    outsider = make_user(balance=50)
    join_tournament(session, t.id, joined)
    go_live(session, t, rng=random.Random(3))
    room_id = t.room_id.encode()

    login(outsider)
    assert room_id not in client.get(f'/t/{t.id}').data
    client.get('/logout')

    login(joined)
    assert room_id in client.get(f'/t/{t.id}').data


def test_wallet_requests(client, session, make_user, login):
    u = make_user(balance=500)
    login(u)

    resp = client.post('/wallet/recharge', data={
        'amount': '300', 'method': 'bkash', 'transaction_id': 'TX55', 'sender_number': '01711111111',
    })
    assert resp.status_code == 302
    assert session.query(RechargeRequest).filter_by(user_id=u.id).count() == 1

    resp = client.post('/wallet/withdraw', data={
        'amount': '150', 'method': 'nagad', 'account_number': '01822222222',
    }, follow_redirects=True)
    assert 'Minimum withdrawal amount is ৳200.'.encode() in resp.data
    assert session.query(WithdrawRequest).count() == 0

    client.post('/wallet/withdraw', data={
        'amount': '200', 'method': 'nagad', 'account_number': '01822222222',
    })
    assert session.query(WithdrawRequest).filter_by(user_id=u.id).count() == 1
    assert session.get(User, u.id).balance == 500

    page = client.get('/wallet')
    assert page.status_code == 200
    assert b'Recharge' in page.data


def test_admin_decides_requests(client, session, make_user, admin, login):
    u = make_user(balance=300)
    recharge = submit_recharge(session, u, 100, 'rocket', 'TX1')
    withdrawal = submit_withdrawal(session, u, 250, 'bkash', '01711111111', minimum=200)
    login(admin)

    assert client.get('/admin/requests').status_code == 200

    client.post(f'/admin/recharge/{recharge.id}/approve')
    assert session.get(User, u.id).balance == 400
    resp = client.post(f'/admin/recharge/{recharge.id}/reject', follow_redirects=True)
    assert b'Request already processed.' in resp.data
    assert session.get(User, u.id).balance == 400

    admin_set_balance(session, u.id, 100, admin)
    client.post(f'/admin/withdraw/{withdrawal.id}/approve')
    assert session.get(User, u.id).balance == -150
    assert session.query(SiteLog).filter_by(action='withdraw_approve', result='failure').count() == 1

    assert client.post(f'/admin/recharge/{recharge.id}/maybe').status_code == 400


def test_admin_tournament_management(client, session, make_user, admin, login):
    login(admin)
    resp = client.post('/admin/tournaments/new', data={
        'title': 'Sunday Duo', 'mode': 'duo', 'entry_fee': '30', 'prize_pool': '1000',
        'kill_reward': '10', 'max_players': '', 'start_time': '2030-01-05T18:00',
    })
    assert resp.status_code == 302
    t = session.query(Tournament).filter_by(title='Sunday Duo').one()
    assert t.start_time == datetime(2030, 1, 5, 18, 0)
    assert t.max_players is None

    resp = client.post('/admin/tournaments/new', data={'title': '', 'mode': 'solo', 'start_time': ''})
    assert session.query(Tournament).count() == 1

    resp = client.post(f'/admin/tournaments/{t.id}/edit', data={
        'title': 'Sunday Duo Cup', 'mode': 'duo', 'entry_fee': '40', 'prize_pool': '1200',
        'kill_reward': '10', 'max_players': '24', 'start_time': '2030-01-05T19:00',
    })
    assert resp.status_code == 302
    assert session.get(Tournament, t.id).entry_fee == 40

    players = [make_user(balance=200), make_user(balance=200)]
    for p in players:
        join_tournament(session, t.id, p)

    client.post(f'/admin/tournaments/{t.id}/status', data={'status': 'live'})
    t = session.get(Tournament, t.id)
    assert t.status == 'live'
    assert t.room_id

    # live tournaments are no longer editable
    resp = client.post(f'/admin/tournaments/{t.id}/edit', data={'title': 'Nope'})
    assert session.get(Tournament, t.id).title == 'Sunday Duo Cup'

    first, second = t.players
    client.post(f'/admin/tournaments/{t.id}/kills', data={
        f'kills_{first.id}': '2', f'kills_{second.id}': '6',
    })
    client.post(f'/admin/tournaments/{t.id}/status', data={'status': 'completed'})
    t = session.get(Tournament, t.id)
    assert t.status == 'completed'
    # 200 - 40 entry + 1200 prize + 6 * 10 kills
    assert session.get(User, second.user_id).balance == 1420
    assert session.get(User, first.user_id).balance == 160 + 600 + 20

    resp = client.post(f'/admin/tournaments/{t.id}/status', data={'status': 'live'}, follow_redirects=True)
    assert b'Cannot change status from completed to live.' in resp.data

    client.post(f'/admin/tournaments/{t.id}/delete')
    assert session.query(Tournament).count() == 0


def test_admin_user_management(client, session, make_user, admin, login):
    u = make_user(name='Searchable Sam', balance=10)
    login(admin)

    resp = client.get('/admin/users?q=Searchable')
    assert b'Searchable Sam' in resp.data

    client.post(f'/admin/users/{u.id}/balance', data={'balance': '75'})
    assert session.get(User, u.id).balance == 75

    client.post(f'/admin/users/{u.id}/toggle-active')
    assert not session.get(User, u.id).is_active

    client.post(f'/admin/users/{admin.id}/delete')
    assert session.get(User, admin.id) is not None

    client.post(f'/admin/users/{u.id}/delete')
    assert session.get(User, u.id) is None


def test_notices_and_settings(client, session, make_user, admin, login):
    login(admin)
    client.post('/admin/notices', data={'title': 'Server maintenance', 'body': 'Back at 9pm'})
    assert session.query(Notice).count() == 1

    client.post('/admin/settings', data={
        'min_withdrawal': '300', 'admin_code': 'newcode1', 'admin_code_confirm': 'newcode1',
        'password': 'wrong-pass',
    })
    resp = client.get('/admin/settings')
    assert b'value="200"' in resp.data

    client.post('/admin/settings', data={
        'min_withdrawal': '300', 'admin_code': 'newcode1', 'admin_code_confirm': 'newcode1',
        'password': 'secret1',
    })
    resp = client.get('/admin/settings')
    assert b'value="300"' in resp.data
    assert b'An admin code is configured.' in resp.data
    client.get('/logout')

    player = make_user(balance=1000)
    login(player)
    resp = client.get('/dashboard')
    assert b'Server maintenance' in resp.data
    resp = client.post('/wallet/withdraw', data={
        'amount': '250', 'method': 'bkash', 'account_number': '01711111111',
    }, follow_redirects=True)
    assert 'Minimum withdrawal amount is ৳300.'.encode() in resp.data


def test_notifications_marked_read(client, session, make_user, admin, login):
    u = make_user()
    req = submit_recharge(session, u, 100, 'bkash', 'TX2')
    approve_recharge(session, req.id, admin)

    login(u)
    resp = client.get('/notifications')
    assert b'Recharge approved' in resp.data
    assert session.query(Notification).filter_by(user_id=u.id, is_read=False).count() == 0


def test_index_logs_tournament_that_failed_to_refresh(client, session, make_tournament, monkeypatch):
    soon = datetime.utcnow() + timedelta(minutes=5)
    broken = make_tournament(title='Broken Room', start_time=soon)
    fine = make_tournament(title='Fine Room', start_time=soon)
    real_go_live = lifecycle.go_live

    def go_live_or_fail(session, t, now=None, rng=None):
        if t.id == broken.id:
            raise TransportError()
        return real_go_live(session, t, now=now, rng=rng)

    monkeypatch.setattr(lifecycle, 'go_live', go_live_or_fail)

    resp = client.get('/')
    assert resp.status_code == 200
    assert b'Some tournament statuses could not be refreshed.' in resp.data

    assert session.get(Tournament, fine.id).status == 'live'
    assert session.get(Tournament, broken.id).status == 'upcoming'
    failure = session.query(TournamentLog).filter_by(tournament_id=broken.id).one()
    assert (failure.action, failure.result) == ('auto_refresh', 'failure')
    assert session.query(TournamentLog).filter_by(tournament_id=fine.id, action='auto_live').count() == 1
