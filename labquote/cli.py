import click

from labquote import db
from labquote.errors import CarrierError
from labquote.tracking import TrackingGate
from labquote.services.reminders import send_payment_reminders


def register_commands(app):
    @app.cli.command("init-db")
    def init_db():
        """Create every table."""
        db.create_all()
        click.echo("tables created")

    @app.cli.command("refresh-tracking")
    def refresh_tracking():
        """Poll the carrier for every active tracking number."""
        gate = TrackingGate.from_app(app)
        try:
            report = gate.sync_all()
        except CarrierError as e:
            raise click.ClickException(e.message)
        click.echo(f"polled={report.polled} updated={report.updated} failed={report.failed}")

    @app.cli.command("send-payment-reminders")
    @click.option("--interval-days", type=int, default=None, help="Override PAYMENT_REMINDER_INTERVAL_DAYS.")
    def send_reminders(interval_days):
        """Email requesters whose approved quotes are still unpaid."""
        stats = send_payment_reminders(interval_days=interval_days)
        click.echo(
            f"checked={stats['checked']} sent={stats['sent']} "
            f"skipped={stats['skipped']} failed={stats['failed']}"
        )
