"""organizers, events, registrations, templates, certificates, badges

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _owner_fk() -> sa.Column:
    return sa.Column(
        "owner_id",
        sa.Integer(),
        sa.ForeignKey("organizers.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "organizers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255)),
        sa.Column("password_hash", sa.String(255)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_organizers_email_lower",
        "organizers",
        [sa.text("lower(email)")],
        unique=True,
    )

    op.create_table(
        "settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("smtp_host", sa.String(255)),
        sa.Column("smtp_port", sa.Integer()),
        sa.Column("smtp_user", sa.String(255)),
        sa.Column("smtp_from_default", sa.String(255)),
        sa.Column("smtp_from_name", sa.String(255)),
        sa.Column("smtp_pass_enc", sa.Text()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("location", sa.String(255)),
        sa.Column("dates", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "registrations",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner_fk(),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(16), nullable=False, server_default="accepted"),
        sa.Column("submitted_by", sa.String(255)),
        sa.Column("general_info", sa.JSON(), nullable=False),
        sa.Column("answers", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_registrations_event_status", "registrations", ["event_id", "status"]
    )

    op.create_table(
        "certificate_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner_fk(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("background_image", sa.Text()),
        sa.Column("elements", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "email_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "certificates",
        sa.Column("id", sa.String(36), primary_key=True),
        _owner_fk(),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("certificate_templates.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "registration_id",
            sa.Integer(),
            sa.ForeignKey("registrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("artifact_url", sa.String(1024), nullable=False),
        sa.Column("public_view_url", sa.String(1024), nullable=False),
        sa.Column("recipient_name", sa.String(255), nullable=False),
        sa.Column("recipient_email", sa.String(255)),
        sa.Column(
            "has_qr",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_certificates_artifact_url", "certificates", ["artifact_url"])
    op.create_index(
        "ix_certificates_event_registration",
        "certificates",
        ["event_id", "registration_id"],
    )

    op.create_table(
        "badges",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner_fk(),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "registration_id",
            sa.Integer(),
            sa.ForeignKey("registrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("certificate_templates.id", ondelete="SET NULL"),
        ),
        sa.Column("image_url", sa.String(1024), nullable=False, unique=True),
        sa.Column("participant_name", sa.String(255)),
        sa.Column("participant_email", sa.String(255)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("has_qr", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("registration_id", name="uq_badges_registration"),
    )

    op.create_table(
        "checkin_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner_fk(),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "registration_id",
            sa.Integer(),
            sa.ForeignKey("registrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day_key", sa.String(32)),
        sa.Column("day_bucket", sa.String(32), nullable=False),
        sa.Column("day_label", sa.String(64)),
        sa.Column("status", sa.String(8), nullable=False, server_default="undone"),
        sa.Column("checked_in_at", sa.DateTime(timezone=True)),
        sa.Column(
            "checked_in_by",
            sa.Integer(),
            sa.ForeignKey("organizers.id", ondelete="SET NULL"),
        ),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "registration_id", "day_bucket", name="uq_checkin_registration_day"
        ),
    )
    op.create_index("ix_checkin_records_event", "checkin_records", ["event_id"])


def downgrade() -> None:
    op.drop_index("ix_checkin_records_event", table_name="checkin_records")
    op.drop_table("checkin_records")
    op.drop_table("badges")
    op.drop_index("ix_certificates_event_registration", table_name="certificates")
    op.drop_index("ix_certificates_artifact_url", table_name="certificates")
    op.drop_table("certificates")
    op.drop_table("email_templates")
    op.drop_table("certificate_templates")
    op.drop_index("ix_registrations_event_status", table_name="registrations")
    op.drop_table("registrations")
    op.drop_table("events")
    op.drop_table("settings")
    op.drop_index("ix_organizers_email_lower", table_name="organizers")
    op.drop_table("organizers")
