"""NiceGUI live board for FF Arena.

A read-only page showing upcoming and live tournaments next to the Flask
site.  It reuses the Flask application and database configuration and
never writes to the database; status transitions stay with the Flask
views and the ``refresh-tournaments`` command.
"""

from datetime import datetime

from nicegui import ui

from .app import create_app, db
from .models import STATUS_LIVE, STATUS_UPCOMING, Tournament

_flask_app = None


def get_flask_app():
    """Create the Flask app on first use so importing this module is cheap."""
    global _flask_app
    if _flask_app is None:
        _flask_app = create_app()
    return _flask_app


def board_rows(session, now=None):
    """Rows for the live board, live tournaments first then by start time."""
    now = now or datetime.utcnow()
    tournaments = (
        session.query(Tournament)
        .filter(Tournament.status.in_([STATUS_LIVE, STATUS_UPCOMING]))
        .order_by(Tournament.start_time)
        .all()
    )
    tournaments.sort(key=lambda t: t.status != STATUS_LIVE)
    rows = []
    for t in tournaments:
        starts_in = None
        if t.status == STATUS_UPCOMING and t.start_time:
            starts_in = max(int((t.start_time - now).total_seconds() // 60), 0)
        rows.append({
            'id': t.id,
            'title': t.title,
            'mode': t.mode,
            'status': t.status,
            'players': f'{t.joined_players}/{t.max_players}' if t.max_players else str(t.joined_players),
            'prize_pool': t.prize_pool,
            'starts_in': starts_in,
        })
    return rows


@ui.page('/board')
def board_page() -> None:
    """Show open tournaments, refreshed every few seconds."""
    flask_app = get_flask_app()

    ui.label('FF Arena').classes('text-2xl m-4')
    container = ui.column().classes('m-4')

    def render() -> None:
        with flask_app.app_context():
            rows = board_rows(db.session)
            db.session.remove()
        container.clear()
        with container:
            if not rows:
                ui.label('No tournaments open right now.')
            for row in rows:
                with ui.card().classes('p-4 w-96'):
                    ui.label(row['title']).classes('text-lg')
                    ui.label(f"{row['mode'].upper()} · {row['status']} · players {row['players']}")
                    ui.label(f"Prize pool ৳{row['prize_pool']:,}")
                    if row['starts_in'] is not None:
                        ui.label(f"Starts in {row['starts_in']} min")

    render()
    ui.timer(15.0, render)


def run() -> None:
    """Start the NiceGUI interface."""
    ui.run(title='FF Arena board')


if __name__ in {'__main__', '__mp_main__'}:
    run()
