from flask import (
    Flask,
    render_template,
    redirect,
    url_for,
    request,
    flash,
    abort,
)
from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager,
    login_user,
    logout_user,
    login_required,
    current_user,
)
from datetime import datetime
from functools import wraps
import os
import click
import psutil

from sqlalchemy import inspect, text, or_, func
from sqlalchemy.exc import SQLAlchemyError


db = SQLAlchemy()
login_manager = LoginManager()


def column_ddl(column, dialect):
    """``ADD COLUMN`` clause for a model column missing from the database."""
    ddl = f'"{column.name}" {column.type.compile(dialect=dialect)}'
    default = column.default
    if default is not None and default.is_scalar:
        value = default.arg
        if isinstance(value, bool):
            value = int(value)
        literal = repr(value) if isinstance(value, str) else str(value)
        if not column.nullable:
            ddl += ' NOT NULL'
        ddl += f' DEFAULT {literal}'
    return ddl


def upgrade_schema(engine, metadata):
    """Bring an existing database up to the current models.

    Tables the database lacks are created; columns a table lacks are added
    with ``ALTER TABLE``.  Columns without a literal default are added as
    nullable since SQLite cannot back-fill them.  An empty database is left
    alone so ``db-init`` stays in charge of the first install.
    """
    inspector = inspect(engine)
    tables = inspector.get_table_names()
    if not tables:
        return []
    added = []
    with engine.begin() as conn:
        for table in metadata.sorted_tables:
            if table.name not in tables:
                continue
            existing = {c['name'] for c in inspector.get_columns(table.name)}
            for column in table.columns:
                if column.name in existing or column.primary_key:
                    continue
                conn.execute(text(
                    f'ALTER TABLE "{table.name}" ADD COLUMN {column_ddl(column, engine.dialect)}'
                ))
                added.append(f'{table.name}.{column.name}')
    metadata.create_all(bind=engine, checkfirst=True)
    return added


def create_app():
    app = Flask(__name__)
    db_file = os.environ.get('FFARENA_DB_PATH', 'ffarena.db')
    log_db_file = os.environ.get('FFARENA_LOG_DB_PATH', db_file.replace('.db', '_logs.db'))
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{db_file}'
    app.config['SQLALCHEMY_BINDS'] = {
        'logs': f'sqlite:///{log_db_file}',
    }
    os.makedirs(app.instance_path, exist_ok=True)
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET', 'dev-secret-change-me')
    app.config['ADMIN_CODE'] = os.environ.get('FFARENA_ADMIN_CODE')
    app.config['MIN_WITHDRAWAL'] = int(os.environ.get('FFARENA_MIN_WITHDRAWAL', 200))
    app.config['KILL_REWARD_POLICY'] = os.environ.get('FFARENA_KILL_REWARD_POLICY', 'placed')

    from . import ledger, lifecycle  # lazy import to avoid circular reference

    if app.config['KILL_REWARD_POLICY'] not in lifecycle.KILL_REWARD_POLICIES:
        raise ValueError(
            'FFARENA_KILL_REWARD_POLICY must be one of '
            f"{', '.join(lifecycle.KILL_REWARD_POLICIES)}, "
            f"got {app.config['KILL_REWARD_POLICY']!r}"
        )

    db.init_app(app)
    login_manager.init_app(app)
    login_manager.login_view = 'login'

    # Existing databases may miss tables or columns the models gained since;
    # add them in place instead of requiring a manual migration.
    with app.app_context():
        upgrade_schema(db.engine, db.metadata)

    from .models import (
        User,
        Tournament,
        TournamentPlayer,
        RechargeRequest,
        WithdrawRequest,
        Notification,
        Notice,
        SiteLog,
        TournamentLog,
        ROLE_USER,
        ROLE_ADMIN,
        ROLES,
        MODES,
        PAYMENT_METHODS,
        REQUEST_PENDING,
        STATUS_UPCOMING,
        STATUS_LIVE,
        TOURNAMENT_STATUSES,
    )
    from .access import (
        landing_endpoint,
        valid_email,
        valid_ffid,
        valid_phone,
        min_withdrawal,
        set_setting,
        set_admin_code,
        verify_admin_code,
        admin_code_configured,
    )
    from .errors import ArenaError, AuthorizationError, TournamentNotFound, ValidationError

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @app.template_filter('taka')
    def format_taka(amount):
        amount = amount or 0
        sign = '-' if amount < 0 else ''
        return f'{sign}৳{abs(amount):,}'

    # ---------- CLI ----------
    @app.cli.command('db-init')
    def db_init():
        db.create_all()
        if not admin_code_configured(db.session) and app.config['ADMIN_CODE']:
            set_admin_code(db.session, app.config['ADMIN_CODE'])
            print("Admin code set from FFARENA_ADMIN_CODE.")
        set_setting(db.session, 'min_withdrawal', min_withdrawal(db.session, app.config['MIN_WITHDRAWAL']))
        db.session.commit()
        # Ensure a default admin account exists for first-time login
        if not db.session.query(User).filter_by(email="admin@example.com").first():
            u = User(email="admin@example.com", name="Admin", role=ROLE_ADMIN)
            u.set_password("admin123")
            db.session.add(u)
            db.session.commit()
            print("Created default admin: admin@example.com / admin123")
        print("Database initialized.")

    @app.cli.command('create-admin')
    @click.option('--email', help='Email for the admin user')
    @click.option('--password', help='Password for the admin user')
    @click.option('--name', default='Admin', help='Display name')
    def create_admin(email, password, name):
        if not email:
            email = click.prompt("Admin email", default="admin@example.com")
        if not password:
            password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
        if db.session.query(User).filter_by(email=email).first():
            print("User exists")
            return
        u = User(email=email, name=name, role=ROLE_ADMIN)
        u.set_password(password)
        db.session.add(u)
        db.session.commit()
        print("Admin created.")

    @app.cli.command('set-admin-code')
    @click.option('--code', help='New admin creation code')
    def set_admin_code_command(code):
        if not code:
            code = click.prompt("Admin code", hide_input=True, confirmation_prompt=True)
        set_admin_code(db.session, code)
        db.session.commit()
        print("Admin code updated.")

    @app.cli.command('refresh-tournaments')
    def refresh_tournaments_command():
        changed, failed = lifecycle.refresh_statuses(
            db.session, kill_reward_policy=app.config['KILL_REWARD_POLICY']
        )
        for t, status in changed:
            print(f"{t.title} -> {status}")
        for t, exc in failed:
            print(f"{t.title}: {exc}")
        print(f"{len(changed)} tournament(s) updated, {len(failed)} failed.")

    # ---------- Helpers ----------
    def me():
        return current_user._get_current_object()

    def log_site(action, result, error=None):
        log = SiteLog(action=action, result=result, error=error,
                      user_id=current_user.id if current_user.is_authenticated else None)
        db.session.add(log)
        db.session.commit()

    def log_tournament(tid, action, result, error=None):
        log = TournamentLog(tournament_id=tid, action=action, result=result, error=error,
                            user_id=current_user.id if current_user.is_authenticated else None)
        db.session.add(log)
        db.session.commit()

    def report_failure(action, exc, tid=None):
        flash(str(exc), exc.category)
        log_site(action, 'failure', str(exc))
        if tid is not None:
            log_tournament(tid, action, 'failure', str(exc))

    def role_required(role):
        def decorator(view):
            @wraps(view)
            def wrapped(*args, **kwargs):
                if not current_user.is_authenticated:
                    return login_manager.unauthorized()
                if current_user.role != role:
                    log_site('role_mismatch', 'failure', f'{request.endpoint} requires {role}')
                    return redirect(url_for(landing_endpoint(current_user)))
                return view(*args, **kwargs)
            return wrapped
        return decorator

    def refresh_statuses():
        """Apply due automatic transitions before a tournament list is shown."""
        changed, failed = lifecycle.refresh_statuses(
            db.session, kill_reward_policy=app.config['KILL_REWARD_POLICY']
        )
        for t, status in changed:
            log_tournament(t.id, f'auto_{status}', 'success')
        for t, exc in failed:
            log_site('refresh_statuses', 'failure', f'{t.title}: {exc}')
            log_tournament(t.id, 'auto_refresh', 'failure', str(exc))
        if failed:
            flash('Some tournament statuses could not be refreshed.', 'warning')

    def parse_datetime_local(value):
        if not value:
            return None
        value = value.strip()
        if not value:
            return None
        candidates = [value]
        if 'T' not in value and ' ' in value:
            candidates.append(value.replace(' ', 'T'))
        for candidate in candidates:
            try:
                return datetime.fromisoformat(candidate)
            except ValueError:
                continue
        formats = (
            '%Y-%m-%d %H:%M',
            '%Y-%m-%d %H:%M:%S',
            '%Y-%m-%dT%H:%M',
            '%Y-%m-%dT%H:%M:%S',
        )
        for candidate in candidates:
            for fmt in formats:
                try:
                    return datetime.strptime(candidate, fmt)
                except ValueError:
                    continue
        return None

    def parse_tournament_form(form):
        title = (form.get('title') or '').strip()
        if not title:
            raise ValidationError('Title is required.')
        mode = (form.get('mode') or 'solo').strip().lower()
        if mode not in MODES:
            raise ValidationError('Mode must be solo or duo.')
        start_time = parse_datetime_local(form.get('start_time'))
        if start_time is None:
            raise ValidationError('Invalid start time format.')
        max_players = (form.get('max_players') or '').strip()
        return {
            'title': title,
            'mode': mode,
            'entry_fee': ledger.parse_amount(form.get('entry_fee', 0), 'Entry fee', minimum=0),
            'prize_pool': ledger.parse_amount(form.get('prize_pool', 0), 'Prize pool', minimum=0),
            'kill_reward': ledger.parse_amount(form.get('kill_reward', 0), 'Kill reward', minimum=0),
            'max_players': ledger.parse_amount(max_players, 'Max players') if max_players else None,
            'start_time': start_time,
        }

    def fmt_bytes(num):
        for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
            if num < 1024.0:
                return f"{num:.2f} {unit}"
            num /= 1024.0
        return f"{num:.2f} PB"

    @app.context_processor
    def inject_navigation_counts():
        unread = 0
        pending = 0
        if current_user.is_authenticated:
            unread = (
                db.session.query(Notification)
                .filter_by(user_id=current_user.id, is_read=False)
                .count()
            )
            if current_user.is_admin:
                pending = (
                    db.session.query(RechargeRequest).filter_by(status=REQUEST_PENDING).count()
                    + db.session.query(WithdrawRequest).filter_by(status=REQUEST_PENDING).count()
                )
        return {
            'nav_unread_notifications': unread,
            'nav_pending_requests': pending,
            'payment_methods': PAYMENT_METHODS,
        }

    # ---------- Routes ----------
    @app.route('/')
    def index():
        refresh_statuses()
        tournaments = db.session.query(Tournament).order_by(Tournament.start_time).all()
        grouped = {status: [t for t in tournaments if t.status == status] for status in TOURNAMENT_STATUSES}
        return render_template('index.html', grouped=grouped)

    @app.route('/register', methods=['GET', 'POST'])
    def register():
        if request.method == 'POST':
            form = request.form
            name = form.get('name', '').strip()
            email = form.get('email', '').strip().lower()
            password = form.get('password', '')
            confirm = form.get('password_confirm', '')
            ffid = form.get('ffid', '').strip()
            phone = form.get('phone', '').strip()
            role = form.get('role', ROLE_USER)
            error = None
            if not name:
                error = 'Name is required.'
            elif not valid_email(email):
                error = 'Enter a valid email address.'
            elif len(password) < 6:
                error = 'Password must be at least 6 characters.'
            elif password != confirm:
                error = 'Passwords do not match.'
            elif not valid_ffid(ffid):
                error = 'Free Fire ID must be 6 to 20 characters.'
            elif phone and not valid_phone(phone):
                error = 'Enter a valid phone number.'
            elif role not in ROLES:
                error = 'Unknown role.'
            elif db.session.query(User).filter_by(email=email).first():
                error = 'Email already registered.'
            if error:
                flash(error, 'error')
                log_site('register', 'failure', error)
                return redirect(url_for('register'))
            if role == ROLE_ADMIN and not verify_admin_code(db.session, form.get('admin_code', '')):
                report_failure('register', AuthorizationError('Invalid admin code.'))
                return redirect(url_for('register'))
            u = User(email=email, name=name, ffid=ffid, phone=phone or None, role=role)
            u.set_password(password)
            try:
                db.session.add(u)
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                log_site('register', 'failure', str(e))
                flash('Could not create account. Please try again.', 'error')
                return redirect(url_for('register'))
            login_user(u, remember=True)
            log_site('register', 'success', role)
            flash("Account created.", "success")
            return redirect(url_for(landing_endpoint(u)))
        return render_template('register.html')

    @app.route('/login', methods=['GET', 'POST'])
    def login():
        if request.method == 'POST':
            email = request.form.get('email', '').strip().lower()
            password = request.form.get('password', '')
            u = db.session.query(User).filter_by(email=email).first()
            if u and u.check_password(password):
                if not login_user(u, remember=request.form.get('remember', '1') == '1'):
                    flash("This account has been deactivated.", "error")
                    log_site('login', 'failure', 'inactive account')
                    return render_template('login.html')
                log_site('login', 'success')
                return redirect(url_for(landing_endpoint(u)))
            report_failure('login', AuthorizationError('Invalid credentials'))
        return render_template('login.html')

    @app.route('/logout')
    @login_required
    def logout():
        log_site('logout', 'success')
        logout_user()
        return redirect(url_for('index'))

    @app.route('/dashboard')
    @role_required(ROLE_USER)
    def dashboard():
        refresh_statuses()
        open_tournaments = (
            db.session.query(Tournament)
            .filter(Tournament.status.in_([STATUS_UPCOMING, STATUS_LIVE]))
            .order_by(Tournament.start_time)
            .all()
        )
        entries = (
            db.session.query(TournamentPlayer)
            .filter_by(user_id=current_user.id)
            .order_by(TournamentPlayer.joined_at.desc())
            .all()
        )
        notices = db.session.query(Notice).order_by(Notice.created_at.desc()).limit(5).all()
        return render_template('dashboard.html', tournaments=open_tournaments,
                               entries=entries, notices=notices)

    @app.route('/t/<int:tid>')
    def view_tournament(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        entry = None
        if current_user.is_authenticated:
            entry = t.player_for(current_user.id)
        show_room = t.status == STATUS_LIVE and (
            entry is not None or (current_user.is_authenticated and current_user.is_admin)
        )
        return render_template('tournament.html', t=t, entry=entry, show_room=show_room,
                               result=t.result)

    @app.route('/t/<int:tid>/join', methods=['POST'])
    @role_required(ROLE_USER)
    def join_tournament(tid):
        try:
            tp = ledger.join_tournament(
                db.session, tid, me(),
                play_mode=request.form.get('play_mode', 'solo'),
                partner_name=request.form.get('partner_name'),
                partner_ffid=request.form.get('partner_ffid'),
            )
        except TournamentNotFound:
            abort(404)
        except ArenaError as exc:
            report_failure('join_tournament', exc, tid)
            return redirect(url_for('view_tournament', tid=tid))
        flash(f"Successfully joined tournament! Entry fee ৳{tp.entry_paid} deducted.", "success")
        log_tournament(tid, 'join', 'success', f'mode={tp.play_mode}')
        log_site('join_tournament', 'success')
        return redirect(url_for('view_tournament', tid=tid))

    @app.route('/wallet')
    @role_required(ROLE_USER)
    def wallet():
        recharges = (
            db.session.query(RechargeRequest)
            .filter_by(user_id=current_user.id)
            .order_by(RechargeRequest.created_at.desc())
            .all()
        )
        withdrawals = (
            db.session.query(WithdrawRequest)
            .filter_by(user_id=current_user.id)
            .order_by(WithdrawRequest.created_at.desc())
            .all()
        )
        return render_template('wallet.html', transactions=current_user.transactions,
                               recharges=recharges, withdrawals=withdrawals,
                               min_withdrawal=min_withdrawal(db.session, app.config['MIN_WITHDRAWAL']))

    @app.route('/wallet/recharge', methods=['POST'])
    @role_required(ROLE_USER)
    def recharge():
        try:
            req = ledger.submit_recharge(
                db.session, me(),
                amount=request.form.get('amount'),
                method=request.form.get('method'),
                reference=request.form.get('transaction_id'),
                sender_number=request.form.get('sender_number'),
            )
        except ArenaError as exc:
            report_failure('recharge_request', exc)
            return redirect(url_for('wallet'))
        flash("Recharge request submitted successfully!", "success")
        log_site('recharge_request', 'success', f'id={req.id}')
        return redirect(url_for('wallet'))

    @app.route('/wallet/withdraw', methods=['POST'])
    @role_required(ROLE_USER)
    def withdraw():
        minimum = min_withdrawal(db.session, app.config['MIN_WITHDRAWAL'])
        try:
            req = ledger.submit_withdrawal(
                db.session, me(),
                amount=request.form.get('amount'),
                method=request.form.get('method'),
                account_number=request.form.get('account_number'),
                minimum=minimum,
            )
        except ArenaError as exc:
            report_failure('withdraw_request', exc)
            return redirect(url_for('wallet'))
        flash("Withdrawal request submitted!", "success")
        log_site('withdraw_request', 'success', f'id={req.id}')
        return redirect(url_for('wallet'))

    @app.route('/profile', methods=['GET', 'POST'])
    @login_required
    def profile():
        if request.method == 'POST':
            u = me()
            name = request.form.get('name', '').strip()
            ffid = request.form.get('ffid', '').strip()
            phone = request.form.get('phone', '').strip()
            password = request.form.get('password', '')
            confirm = request.form.get('password_confirm', '')
            if not name:
                flash('Name is required.', 'error')
            elif not valid_ffid(ffid):
                flash('Free Fire ID must be 6 to 20 characters.', 'error')
            elif phone and not valid_phone(phone):
                flash('Enter a valid phone number.', 'error')
            elif password and (len(password) < 6 or password != confirm):
                flash('Passwords must match and be at least 6 characters.', 'error')
            else:
                u.name = name
                u.ffid = ffid
                u.phone = phone or None
                if password:
                    u.set_password(password)
                try:
                    db.session.commit()
                except SQLAlchemyError as e:
                    db.session.rollback()
                    log_site('profile_update', 'failure', str(e))
                    flash('Could not save changes. Please try again.', 'error')
                    return redirect(url_for('profile'))
                log_site('profile_update', 'success')
                flash('Profile updated successfully!', 'success')
            return redirect(url_for('profile'))
        return render_template('profile.html')

    @app.route('/notifications')
    @login_required
    def notifications():
        items = list(current_user.notifications)
        page = render_template('notifications.html', notifications=items)
        unread = [n for n in items if not n.is_read]
        if unread:
            # best effort; the page is already rendered
            try:
                for n in unread:
                    n.is_read = True
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                log_site('notifications_read', 'failure', str(e))
        return page

    @app.route('/api/tournaments')
    def api_tournaments():
        refresh_statuses()
        tournaments = db.session.query(Tournament).order_by(Tournament.start_time).all()
        return {
            'tournaments': [
                {
                    'id': t.id,
                    'title': t.title,
                    'mode': t.mode,
                    'status': t.status,
                    'entry_fee': t.entry_fee,
                    'prize_pool': t.prize_pool,
                    'kill_reward': t.kill_reward,
                    'joined_players': t.joined_players,
                    'max_players': t.max_players,
                    'start_time': t.start_time.isoformat() if t.start_time else None,
                }
                for t in tournaments
            ]
        }

    # ---------- Admin ----------
    @app.route('/admin')
    @role_required(ROLE_ADMIN)
    def admin_dashboard():
        log_site('view_admin_dashboard', 'success')
        revenue = db.session.query(
            func.coalesce(func.sum(Tournament.entry_fee * Tournament.joined_players), 0)
        ).scalar()
        stats = {
            'total_users': db.session.query(User).count(),
            'total_tournaments': db.session.query(Tournament).count(),
            'total_revenue': revenue,
            'pending_requests': (
                db.session.query(RechargeRequest).filter_by(status=REQUEST_PENDING).count()
                + db.session.query(WithdrawRequest).filter_by(status=REQUEST_PENDING).count()
            ),
        }
        process = psutil.Process(os.getpid())
        db_path = db.engine.url.database
        db_size = os.path.getsize(db_path) if db_path and os.path.exists(db_path) else 0
        recent = db.session.query(Tournament).order_by(Tournament.created_at.desc()).limit(5).all()
        return render_template(
            'admin/dashboard.html',
            stats=stats,
            recent=recent,
            db_size=fmt_bytes(db_size),
            ram_usage=fmt_bytes(process.memory_info().rss),
            cpu_usage=psutil.cpu_percent(interval=None),
        )

    @app.route('/admin/tournaments')
    @role_required(ROLE_ADMIN)
    def admin_tournaments():
        refresh_statuses()
        tournaments = db.session.query(Tournament).order_by(Tournament.start_time.desc()).all()
        return render_template('admin/tournaments.html', tournaments=tournaments, modes=MODES)

    @app.route('/admin/tournaments/new', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def new_tournament():
        try:
            fields = parse_tournament_form(request.form)
        except ValidationError as exc:
            report_failure('tournament_create', exc)
            return redirect(url_for('admin_tournaments'))
        t = Tournament(created_by_id=current_user.id, **fields)
        try:
            db.session.add(t)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            log_site('tournament_create', 'failure', str(e))
            flash('Error creating tournament.', 'error')
            return redirect(url_for('admin_tournaments'))
        log_site('tournament_create', 'success')
        log_tournament(t.id, 'create', 'success')
        flash("Tournament created successfully!", "success")
        return redirect(url_for('admin_tournaments'))

    @app.route('/admin/tournaments/<int:tid>/edit', methods=['GET', 'POST'])
    @role_required(ROLE_ADMIN)
    def edit_tournament(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        if t.status != STATUS_UPCOMING:
            flash('Only upcoming tournaments can be edited.', 'error')
            return redirect(url_for('view_tournament', tid=tid))
        if request.method == 'POST':
            try:
                fields = parse_tournament_form(request.form)
            except ValidationError as exc:
                report_failure('edit_tournament', exc, tid)
                return render_template('admin/edit_tournament.html', t=t, modes=MODES)
            if fields['max_players'] and fields['max_players'] < t.joined_players:
                flash('Max players cannot be lower than the players already joined.', 'error')
                return render_template('admin/edit_tournament.html', t=t, modes=MODES)
            if fields['mode'] != t.mode and t.joined_players:
                flash('Mode cannot change once players have joined.', 'error')
                return render_template('admin/edit_tournament.html', t=t, modes=MODES)
            for key, value in fields.items():
                setattr(t, key, value)
            db.session.commit()
            flash('Tournament updated.', 'success')
            log_site('edit_tournament', 'success', t.title)
            log_tournament(tid, 'edit', 'success')
            return redirect(url_for('view_tournament', tid=tid))
        return render_template('admin/edit_tournament.html', t=t, modes=MODES)

    @app.route('/admin/tournaments/<int:tid>/delete', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def delete_tournament(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        title = t.title
        db.session.delete(t)
        db.session.commit()
        flash("Tournament deleted successfully!", "success")
        log_site('delete_tournament', 'success', title)
        log_tournament(tid, 'delete', 'success')
        return redirect(url_for('admin_tournaments'))

    @app.route('/admin/tournaments/<int:tid>/status', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def change_tournament_status(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        target = request.form.get('status', '')
        try:
            lifecycle.change_status(db.session, t, target,
                                    kill_reward_policy=app.config['KILL_REWARD_POLICY'])
        except ArenaError as exc:
            report_failure('change_status', exc, tid)
            return redirect(url_for('view_tournament', tid=tid))
        flash(f'Tournament is now {t.status}.', 'success')
        log_tournament(tid, f'status_{t.status}', 'success')
        log_site('change_status', 'success', f'{tid}->{t.status}')
        return redirect(url_for('view_tournament', tid=tid))

    @app.route('/admin/tournaments/<int:tid>/kills', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def record_kills(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        if t.status != STATUS_LIVE:
            flash('Kills can only be recorded while the tournament is live.', 'error')
            return redirect(url_for('view_tournament', tid=tid))
        try:
            for p in t.players:
                raw = request.form.get(f'kills_{p.id}')
                if raw is not None and raw.strip() != '':
                    p.kills = ledger.parse_amount(raw, 'Kills', minimum=0)
        except ValidationError as exc:
            db.session.rollback()
            report_failure('record_kills', exc, tid)
            return redirect(url_for('view_tournament', tid=tid))
        db.session.commit()
        flash('Kills saved.', 'success')
        log_tournament(tid, 'record_kills', 'success')
        return redirect(url_for('view_tournament', tid=tid))

    @app.route('/admin/tournaments/<int:tid>/logs')
    @role_required(ROLE_ADMIN)
    def tournament_logs(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        logs = db.session.query(TournamentLog).filter_by(tournament_id=tid).order_by(TournamentLog.timestamp.desc()).all()
        for l in logs:
            l.user = db.session.get(User, l.user_id) if l.user_id else None
        return render_template('admin/logs.html', logs=logs, heading=f'{t.title} log')

    @app.route('/admin/users')
    @role_required(ROLE_ADMIN)
    def admin_users():
        q = request.args.get('q', '').strip()
        query = db.session.query(User)
        if q:
            pattern = f"%{q}%"
            query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern),
                                     User.ffid.ilike(pattern)))
        users = query.order_by(User.name).all()
        return render_template('admin/users.html', users=users, search_query=q)

    @app.route('/admin/users/<int:uid>/balance', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def admin_set_balance(uid):
        try:
            u = ledger.admin_set_balance(db.session, uid, request.form.get('balance'), me())
        except ArenaError as exc:
            report_failure('admin_set_balance', exc)
            return redirect(url_for('admin_users'))
        flash('User balance updated!', 'success')
        log_site('admin_set_balance', 'success', f'user_id={uid} balance={u.balance}')
        return redirect(url_for('admin_users'))

    @app.route('/admin/users/<int:uid>/toggle-active', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def admin_toggle_user(uid):
        u = db.session.get(User, uid)
        if not u:
            abort(404)
        if u.id == current_user.id:
            flash('You cannot deactivate your own account.', 'error')
            return redirect(url_for('admin_users'))
        u.is_active = not u.is_active
        db.session.commit()
        log_site('user_toggle_active', 'success', f'user_id={uid} active={u.is_active}')
        flash('User activated.' if u.is_active else 'User deactivated.', 'success')
        return redirect(url_for('admin_users'))

    @app.route('/admin/users/<int:uid>/delete', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def admin_delete_user(uid):
        u = db.session.get(User, uid)
        if not u:
            abort(404)
        if u.id == current_user.id:
            flash('You cannot delete your own account.', 'error')
            return redirect(url_for('admin_users'))
        db.session.delete(u)
        db.session.commit()
        log_site('user_delete', 'success', f'user_id={uid}')
        flash('User deleted successfully!', 'success')
        return redirect(url_for('admin_users'))

    @app.route('/admin/requests')
    @role_required(ROLE_ADMIN)
    def admin_requests():
        recharges = db.session.query(RechargeRequest).order_by(RechargeRequest.created_at.desc()).all()
        withdrawals = db.session.query(WithdrawRequest).order_by(WithdrawRequest.created_at.desc()).all()
        return render_template('admin/requests.html', recharges=recharges, withdrawals=withdrawals)

    @app.route('/admin/recharge/<int:rid>/<string:decision>', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def decide_recharge(rid, decision):
        actions = {'approve': ledger.approve_recharge, 'reject': ledger.reject_recharge}
        if decision not in actions:
            abort(400)
        try:
            actions[decision](db.session, rid, me())
        except ArenaError as exc:
            report_failure(f'recharge_{decision}', exc)
            return redirect(url_for('admin_requests'))
        if decision == 'approve':
            flash('Recharge approved and balance added!', 'success')
        else:
            flash('Recharge request rejected!', 'success')
        log_site(f'recharge_{decision}', 'success', f'id={rid}')
        return redirect(url_for('admin_requests'))

    @app.route('/admin/withdraw/<int:rid>/<string:decision>', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def decide_withdraw(rid, decision):
        try:
            if decision == 'approve':
                req, overdraft = ledger.approve_withdrawal(db.session, rid, me())
            elif decision == 'reject':
                ledger.reject_withdrawal(db.session, rid, me())
            else:
                abort(400)
        except ArenaError as exc:
            report_failure(f'withdraw_{decision}', exc)
            return redirect(url_for('admin_requests'))
        if decision == 'approve':
            if overdraft:
                flash('Withdrawal approved, but the balance no longer covered it.', 'warning')
                log_site('withdraw_approve', 'failure', f'id={rid} overdraft user_id={req.user_id}')
            else:
                flash('Withdrawal approved and processed!', 'success')
                log_site('withdraw_approve', 'success', f'id={rid}')
        else:
            flash('Withdrawal request rejected!', 'success')
            log_site('withdraw_reject', 'success', f'id={rid}')
        return redirect(url_for('admin_requests'))

    @app.route('/admin/notices', methods=['GET', 'POST'])
    @role_required(ROLE_ADMIN)
    def admin_notices():
        if request.method == 'POST':
            title = request.form.get('title', '').strip()
            body = request.form.get('body', '').strip()
            if not title or not body:
                flash('Title and message are required.', 'error')
            else:
                db.session.add(Notice(title=title, body=body, created_by_id=current_user.id))
                db.session.commit()
                log_site('notice_create', 'success', title)
                flash('Notice published.', 'success')
            return redirect(url_for('admin_notices'))
        notices = db.session.query(Notice).order_by(Notice.created_at.desc()).all()
        return render_template('admin/notices.html', notices=notices)

    @app.route('/admin/notices/<int:nid>/delete', methods=['POST'])
    @role_required(ROLE_ADMIN)
    def delete_notice(nid):
        n = db.session.get(Notice, nid)
        if not n:
            abort(404)
        db.session.delete(n)
        db.session.commit()
        log_site('notice_delete', 'success', f'id={nid}')
        flash('Notice deleted.', 'success')
        return redirect(url_for('admin_notices'))

    @app.route('/admin/settings', methods=['GET', 'POST'])
    @role_required(ROLE_ADMIN)
    def admin_settings():
        if request.method == 'POST':
            try:
                minimum = ledger.parse_amount(request.form.get('min_withdrawal'), 'Minimum withdrawal')
            except ValidationError as exc:
                report_failure('settings_update', exc)
                return redirect(url_for('admin_settings'))
            set_setting(db.session, 'min_withdrawal', minimum)
            new_code = request.form.get('admin_code', '')
            if new_code:
                if not current_user.check_password(request.form.get('password', '')):
                    db.session.rollback()
                    flash('Current password is incorrect.', 'error')
                    log_site('admin_code_rotate', 'failure', 'wrong password')
                    return redirect(url_for('admin_settings'))
                if len(new_code) < 6 or new_code != request.form.get('admin_code_confirm', ''):
                    db.session.rollback()
                    flash('Admin codes must match and be at least 6 characters.', 'error')
                    return redirect(url_for('admin_settings'))
                set_admin_code(db.session, new_code)
                log_site('admin_code_rotate', 'success')
            db.session.commit()
            log_site('settings_update', 'success')
            flash('Settings saved.', 'success')
            return redirect(url_for('admin_settings'))
        return render_template('admin/settings.html',
                               min_withdrawal=min_withdrawal(db.session, app.config['MIN_WITHDRAWAL']),
                               admin_code_set=admin_code_configured(db.session))

    @app.route('/admin/logs')
    @role_required(ROLE_ADMIN)
    def site_logs():
        logs = db.session.query(SiteLog).order_by(SiteLog.timestamp.desc()).limit(500).all()
        for l in logs:
            l.user = db.session.get(User, l.user_id) if l.user_id else None
        return render_template('admin/logs.html', logs=logs, heading='Site log')

    return app
