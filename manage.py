import time

import click
from flask import current_app
from flask.cli import FlaskGroup
from flask_migrate import Migrate
from sqlalchemy import func

from certcheck.app import create_app, db
from certcheck.models import Event, Organizer
from certcheck.services import checkin as checkin_service
from certcheck.services.badges import generate_badges
from certcheck.services.certificates import (
    generate_certificates,
    send_certificates_by_email,
)
from certcheck.services.scanner import BadgeScanner, ScanStatus
from certcheck.shared.errors import CertcheckError

migrate = Migrate()


def create_certcheck_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_certcheck_app)


def _organizer(email: str) -> Organizer | None:
    return (
        db.session.query(Organizer)
        .filter(func.lower(Organizer.email) == email.lower())
        .one_or_none()
    )


def _id_list(raw: str) -> list[int]:
    return [int(part) for part in raw.split(",") if part.strip()]


@cli.command("create_organizer")
@click.option("--email", required=True)
@click.option("--name", "full_name", default=None)
@click.password_option()
def create_organizer(email: str, full_name: str | None, password: str):
    """Create an organizer account."""
    if _organizer(email):
        click.echo("Organizer already exists", err=True)
        return
    organizer = Organizer(email=email, full_name=full_name)
    organizer.set_password(password)
    db.session.add(organizer)
    db.session.commit()
    click.echo(f"organizer_id={organizer.id}")


@cli.command("generate_certs")
@click.option("--organizer", "email", required=True)
@click.option("--event", "event_id", required=True, type=int)
@click.option("--template", "template_id", required=True, type=int)
@click.option("--registrations", "registrations", required=True, help="Comma separated ids")
@click.option("--pdf", "pdf_path", type=click.Path(dir_okay=False, writable=True))
def generate_certs(email, event_id, template_id, registrations, pdf_path):
    """Generate certificates for the given registrations."""
    organizer = _organizer(email)
    if not organizer:
        click.echo("Not found", err=True)
        return
    try:
        result = generate_certificates(
            organizer.id, event_id, template_id, _id_list(registrations)
        )
    except CertcheckError as exc:
        click.echo(str(exc), err=True)
        return
    for cert in result.generated:
        click.echo(f"{cert.registration_id} {cert.public_view_url} qr={cert.has_qr}")
    for failure in result.failures:
        click.echo(f"FAILED {failure.registration_id}: {failure.error}", err=True)
    if pdf_path and result.document:
        with open(pdf_path, "wb") as handle:
            handle.write(result.document)
        click.echo(pdf_path)
    click.echo(result.summary)


@cli.command("generate_badges")
@click.option("--organizer", "email", required=True)
@click.option("--event", "event_id", required=True, type=int)
@click.option("--template", "template_id", required=True, type=int)
@click.option("--registrations", "registrations", required=True, help="Comma separated ids")
def generate_badges_command(email, event_id, template_id, registrations):
    """Issue scannable badges for the given registrations."""
    organizer = _organizer(email)
    if not organizer:
        click.echo("Not found", err=True)
        return
    try:
        batch = generate_badges(organizer.id, event_id, template_id, _id_list(registrations))
    except CertcheckError as exc:
        click.echo(str(exc), err=True)
        return
    for badge in batch.issued:
        click.echo(f"{badge.registration_id} {badge.image_url} qr={badge.has_qr}")
    for failure in batch.failures:
        click.echo(f"FAILED {failure.registration_id}: {failure.error}", err=True)
    click.echo(batch.summary)


@cli.command("send_certs")
@click.option("--organizer", "email", required=True)
@click.option("--event", "event_id", required=True, type=int)
@click.option("--template", "template_id", required=True, type=int)
@click.option("--email-template", "email_template_id", required=True, type=int)
@click.option("--registrations", "registrations", required=True, help="Comma separated ids")
def send_certs(email, event_id, template_id, email_template_id, registrations):
    """Generate certificates and email each participant a link."""
    organizer = _organizer(email)
    if not organizer:
        click.echo("Not found", err=True)
        return
    try:
        result = send_certificates_by_email(
            organizer.id,
            event_id,
            template_id,
            email_template_id,
            _id_list(registrations),
        )
    except CertcheckError as exc:
        click.echo(str(exc), err=True)
        return
    for skipped in result.skipped:
        click.echo(f"SKIPPED {skipped.registration_id}: {skipped.error}", err=True)
    sent = sum(1 for ok in result.emailed.values() if ok)
    click.echo(f"{result.summary}; emailed={sent}")


@cli.command("checkin_toggle")
@click.option("--organizer", "email", required=True)
@click.option("--event", "event_id", required=True, type=int)
@click.option("--registration", "registration_id", required=True, type=int)
@click.option("--day", "day_key", default=None, help="ISO date; omit for collective")
def checkin_toggle(email, event_id, registration_id, day_key):
    """Toggle one participant's check-in."""
    organizer = _organizer(email)
    event = db.session.get(Event, event_id)
    if not organizer or not event or event.owner_id != organizer.id:
        click.echo("Not found", err=True)
        return
    try:
        record = checkin_service.toggle(event, registration_id, day_key, organizer.id)
    except CertcheckError as exc:
        click.echo(str(exc), err=True)
        return
    click.echo(f"{record.registration_id} {record.day_label} {record.status}")


def _echo_state(state):
    if state.status is ScanStatus.ERROR:
        click.echo(f"[{state.status.value}] {state.error}", err=True)
    elif state.status is ScanStatus.CHECKED_IN:
        click.echo(f"[{state.status.value}] {state.participant_name} @ {state.event_name}")
    else:
        click.echo(f"[{state.status.value}] {state.badge_url or ''}")


@cli.command("scan_badges")
@click.option("--organizer", "email", required=True)
@click.option("--event", "event_id", type=int, default=None)
@click.option("--day", "day_key", default=None)
@click.option("--seconds", type=float, default=None, help="Stop after this many seconds")
def scan_badges(email, event_id, day_key, seconds):
    """Scan badges from the camera and check participants in."""
    organizer = _organizer(email)
    if not organizer:
        click.echo("Not found", err=True)
        return
    scanner = BadgeScanner(
        organizer.id,
        day_key=day_key,
        event_id=event_id,
        app=current_app._get_current_object(),
        on_change=_echo_state,
    )
    started = time.monotonic()
    with scanner:
        if not scanner.running:
            return
        try:
            while scanner.running:
                if seconds is not None and time.monotonic() - started >= seconds:
                    break
                time.sleep(0.2)
        except KeyboardInterrupt:
            click.echo("stopping")


@cli.command("scan_image")
@click.option("--organizer", "email", required=True)
@click.option("--event", "event_id", type=int, default=None)
@click.option("--day", "day_key", default=None)
@click.argument("image_path", type=click.Path(exists=True, dir_okay=False))
def scan_image(email, event_id, day_key, image_path):
    """Check a participant in from a photo of their badge."""
    organizer = _organizer(email)
    if not organizer:
        click.echo("Not found", err=True)
        return
    scanner = BadgeScanner(organizer.id, day_key=day_key, event_id=event_id)
    with open(image_path, "rb") as handle:
        state = scanner.decode_image(handle.read())
    _echo_state(state)


if __name__ == "__main__":
    cli()
