"""create profile, business entities, record lock and presence tables

Revision ID: 3c1f0e7a9b21
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c1f0e7a9b21"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _audit_columns() -> list:
    return [
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "created_by",
            sa.String(length=255),
            nullable=False,
            server_default=sa.text("'system@local'"),
        ),
        sa.Column(
            "last_changed_by",
            sa.String(length=255),
            nullable=False,
            server_default=sa.text("'system@local'"),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "profile",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("company_id", sa.String(length=36), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("email", name="uq_profile_email"),
    )
    op.create_index("ix_profile_company_id", "profile", ["company_id"], unique=False)

    op.create_table(
        "company",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("company_code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("trading_name", sa.String(length=255), nullable=True),
        sa.Column("primary_contact_email", sa.String(length=255), nullable=True),
        sa.Column("billing_city", sa.String(length=120), nullable=True),
        sa.Column("payment_terms_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )
    op.create_index("ix_company_company_code", "company", ["company_code"], unique=True)

    op.create_table(
        "branch",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "company_id",
            sa.String(length=36),
            sa.ForeignKey("company.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("region", sa.String(length=120), nullable=True),
        sa.Column("site_requirements", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )
    op.create_index("ix_branch_company_id", "branch", ["company_id"], unique=False)

    op.create_table(
        "equipment",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "branch_id",
            sa.String(length=36),
            sa.ForeignKey("branch.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("manufacturer", sa.String(length=120), nullable=True),
        sa.Column("model", sa.String(length=120), nullable=True),
        sa.Column("serial_number", sa.String(length=120), nullable=True),
        sa.Column("category", sa.String(length=60), nullable=False),
        sa.Column(
            "calibration_interval_months",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("12"),
        ),
        sa.Column("next_calibration_due", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
    )
    op.create_index("ix_equipment_branch_id", "equipment", ["branch_id"], unique=False)

    op.create_table(
        "job",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "branch_id",
            sa.String(length=36),
            sa.ForeignKey("branch.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("job_number", sa.String(length=30), nullable=False, unique=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'new'")),
        sa.Column("priority", sa.String(length=10), nullable=False, server_default=sa.text("'normal'")),
        sa.Column("assigned_to", sa.String(length=36), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("client_notes", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_job_branch_id", "job", ["branch_id"], unique=False)

    op.create_table(
        "quote",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "branch_id",
            sa.String(length=36),
            sa.ForeignKey("branch.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("quote_number", sa.String(length=30), nullable=False, unique=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("valid_until", sa.Date(), nullable=True),
        sa.Column("total", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("notes", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_quote_branch_id", "quote", ["branch_id"], unique=False)

    op.create_table(
        "certificate",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "job_id",
            sa.String(length=36),
            sa.ForeignKey("job.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "equipment_id",
            sa.String(length=36),
            sa.ForeignKey("equipment.id"),
            nullable=False,
        ),
        sa.Column("certificate_number", sa.String(length=30), nullable=False, unique=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("calibration_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("passed", sa.Boolean(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_certificate_job_id", "certificate", ["job_id"], unique=False)
    op.create_index("ix_certificate_equipment_id", "certificate", ["equipment_id"], unique=False)

    op.create_table(
        "record_lock",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("holder_id", sa.String(length=36), nullable=False),
        sa.Column("holder_name", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_record_lock_entity"),
    )
    op.create_index("ix_record_lock_expires_at", "record_lock", ["expires_at"], unique=False)
    op.create_index("ix_record_lock_holder_id", "record_lock", ["holder_id"], unique=False)

    op.create_table(
        "user_presence",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("user_name", sa.String(length=255), nullable=False),
        sa.Column("current_page", sa.String(length=500), nullable=True),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'online'")),
        sa.Column("last_seen", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", name="uq_user_presence_user"),
    )
    op.create_index(
        "ix_user_presence_entity",
        "user_presence",
        ["entity_type", "entity_id"],
        unique=False,
    )
    op.create_index("ix_user_presence_last_seen", "user_presence", ["last_seen"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_user_presence_last_seen", table_name="user_presence")
    op.drop_index("ix_user_presence_entity", table_name="user_presence")
    op.drop_table("user_presence")
    op.drop_index("ix_record_lock_holder_id", table_name="record_lock")
    op.drop_index("ix_record_lock_expires_at", table_name="record_lock")
    op.drop_table("record_lock")
    op.drop_index("ix_certificate_equipment_id", table_name="certificate")
    op.drop_index("ix_certificate_job_id", table_name="certificate")
    op.drop_table("certificate")
    op.drop_index("ix_quote_branch_id", table_name="quote")
    op.drop_table("quote")
    op.drop_index("ix_job_branch_id", table_name="job")
    op.drop_table("job")
    op.drop_index("ix_equipment_branch_id", table_name="equipment")
    op.drop_table("equipment")
    op.drop_index("ix_branch_company_id", table_name="branch")
    op.drop_table("branch")
    op.drop_index("ix_company_company_code", table_name="company")
    op.drop_table("company")
    op.drop_index("ix_profile_company_id", table_name="profile")
    op.drop_table("profile")
