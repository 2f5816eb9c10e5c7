"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


JOB_STATUSES = ("pending", "processing", "completed", "partial", "failed")


def _inspector():
    from sqlalchemy import inspect as sa_inspect
    return sa_inspect(op.get_bind())


def upgrade() -> None:
    inspector = _inspector()
    existing_tables = set(inspector.get_table_names())

    def existing_indexes(table: str) -> set[str]:
        if table not in existing_tables:
            return set()
        return {idx["name"] for idx in inspector.get_indexes(table)}

    if "accounts" not in existing_tables:
        op.create_table(
            "accounts",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("free_credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("paid_credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("free_credits_reset_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.CheckConstraint("free_credits >= 0", name="ck_accounts_free_credits_non_negative"),
            sa.CheckConstraint("paid_credits >= 0", name="ck_accounts_paid_credits_non_negative"),
        )
    idxs = existing_indexes("accounts")
    if "ix_accounts_id" not in idxs:
        op.create_index("ix_accounts_id", "accounts", ["id"])

    if "credit_transactions" not in existing_tables:
        op.create_table(
            "credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.String(), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("pool", sa.String(), nullable=False),
            sa.Column("reason", sa.String(), nullable=False),
            sa.Column("reference_id", sa.String(), nullable=True),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("credit_transactions")
    for name, column in (
        ("ix_credit_transactions_id", "id"),
        ("ix_credit_transactions_account_id", "account_id"),
        ("ix_credit_transactions_reason", "reason"),
        ("ix_credit_transactions_reference_id", "reference_id"),
        ("ix_credit_transactions_created_at", "created_at"),
    ):
        if name not in idxs:
            op.create_index(name, "credit_transactions", [column])

    if "usage_logs" not in existing_tables:
        op.create_table(
            "usage_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("legacy_id", sa.String(), nullable=False),
            sa.Column("action", sa.String(), nullable=False),
            sa.Column("units", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("reference_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("usage_logs")
    for name, column in (
        ("ix_usage_logs_id", "id"),
        ("ix_usage_logs_legacy_id", "legacy_id"),
        ("ix_usage_logs_reference_id", "reference_id"),
        ("ix_usage_logs_created_at", "created_at"),
    ):
        if name not in idxs:
            op.create_index(name, "usage_logs", [column])

    if "conversion_jobs" not in existing_tables:
        op.create_table(
            "conversion_jobs",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("owner_id", sa.String(), nullable=False),
            sa.Column("account_id", sa.String(), nullable=True),
            sa.Column("legacy_id", sa.String(), nullable=True),
            sa.Column("kind", sa.String(), nullable=False, server_default="photo"),
            sa.Column("status", sa.Enum(*JOB_STATUSES, name="conversionjobstatus"), nullable=False),
            sa.Column("style_id", sa.String(), nullable=False),
            sa.Column("cost_per_image", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("total_images", sa.Integer(), nullable=False),
            sa.Column("completed_images", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("result_ids", sa.JSON(), nullable=False),
            sa.Column("failed_indices", sa.JSON(), nullable=False),
            sa.Column("input_keys", sa.JSON(), nullable=False),
            sa.Column("scene_analysis", sa.JSON(), nullable=True),
            sa.Column("style_reference_key", sa.String(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )
    idxs = existing_indexes("conversion_jobs")
    for name, column in (
        ("ix_conversion_jobs_id", "id"),
        ("ix_conversion_jobs_owner_id", "owner_id"),
        ("ix_conversion_jobs_account_id", "account_id"),
        ("ix_conversion_jobs_legacy_id", "legacy_id"),
        ("ix_conversion_jobs_status", "status"),
    ):
        if name not in idxs:
            op.create_index(name, "conversion_jobs", [column])

    if "generated_images" not in existing_tables:
        op.create_table(
            "generated_images",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("blob_key", sa.String(), nullable=False),
            sa.Column("mime_type", sa.String(), nullable=False, server_default="image/png"),
            sa.Column("owner_id", sa.String(), nullable=True),
            sa.Column("job_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)")),
        )
    idxs = existing_indexes("generated_images")
    for name, column in (
        ("ix_generated_images_id", "id"),
        ("ix_generated_images_owner_id", "owner_id"),
        ("ix_generated_images_job_id", "job_id"),
    ):
        if name not in idxs:
            op.create_index(name, "generated_images", [column])


def downgrade() -> None:
    op.drop_index("ix_generated_images_job_id", table_name="generated_images")
    op.drop_index("ix_generated_images_owner_id", table_name="generated_images")
    op.drop_index("ix_generated_images_id", table_name="generated_images")
    op.drop_table("generated_images")

    op.drop_index("ix_conversion_jobs_status", table_name="conversion_jobs")
    op.drop_index("ix_conversion_jobs_legacy_id", table_name="conversion_jobs")
    op.drop_index("ix_conversion_jobs_account_id", table_name="conversion_jobs")
    op.drop_index("ix_conversion_jobs_owner_id", table_name="conversion_jobs")
    op.drop_index("ix_conversion_jobs_id", table_name="conversion_jobs")
    op.drop_table("conversion_jobs")
    sa.Enum(name="conversionjobstatus").drop(op.get_bind(), checkfirst=True)

    op.drop_index("ix_usage_logs_created_at", table_name="usage_logs")
    op.drop_index("ix_usage_logs_reference_id", table_name="usage_logs")
    op.drop_index("ix_usage_logs_legacy_id", table_name="usage_logs")
    op.drop_index("ix_usage_logs_id", table_name="usage_logs")
    op.drop_table("usage_logs")

    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_reference_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_reason", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_account_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_accounts_id", table_name="accounts")
    op.drop_table("accounts")
