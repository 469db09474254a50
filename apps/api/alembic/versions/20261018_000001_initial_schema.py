"""create initial schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("picture", sa.String(), nullable=True),
        sa.Column("auth_provider", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "ai_images_creator_credits",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("initial_grant", sa.Integer(), nullable=False),
        sa.Column("last_order_no", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "ai_images_creator_credit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("order_no", sa.String(), nullable=True),
        sa.Column("operation_type", sa.String(), nullable=False),
        sa.Column("old_value", sa.Integer(), nullable=False),
        sa.Column("change_value", sa.Integer(), nullable=False),
        sa.Column("new_value", sa.Integer(), nullable=False),
        sa.Column("note", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_ai_images_creator_credit_logs_user_id"), "ai_images_creator_credit_logs", ["user_id"], unique=False)
    op.create_index(op.f("ix_ai_images_creator_credit_logs_order_no"), "ai_images_creator_credit_logs", ["order_no"], unique=False)
    op.create_index(
        op.f("ix_ai_images_creator_credit_logs_operation_type"),
        "ai_images_creator_credit_logs",
        ["operation_type"],
        unique=False,
    )
    op.create_index(
        op.f("ix_ai_images_creator_credit_logs_created_at"),
        "ai_images_creator_credit_logs",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "image_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("style", sa.String(), nullable=True),
        sa.Column("aspect_ratio", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("stage", sa.String(), nullable=True),
        sa.Column("lock_version", sa.Integer(), nullable=False),
        sa.Column("credits_deducted", sa.Boolean(), nullable=False),
        sa.Column("credits_refunded", sa.Boolean(), nullable=False),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(op.f("ix_image_tasks_user_id"), "image_tasks", ["user_id"], unique=False)
    op.create_index(op.f("ix_image_tasks_status"), "image_tasks", ["status"], unique=False)
    op.create_index(op.f("ix_image_tasks_created_at"), "image_tasks", ["created_at"], unique=False)

    op.create_table(
        "ai_images_creator_payments",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_no", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("payment_type", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trade_no", sa.String(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("callback_data", sa.JSON(), nullable=True),
        sa.Column("manual_processed", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_ai_images_creator_payments_order_no"), "ai_images_creator_payments", ["order_no"], unique=True)
    op.create_index(op.f("ix_ai_images_creator_payments_user_id"), "ai_images_creator_payments", ["user_id"], unique=False)
    op.create_index(op.f("ix_ai_images_creator_payments_status"), "ai_images_creator_payments", ["status"], unique=False)
    op.create_index(op.f("ix_ai_images_creator_payments_created_at"), "ai_images_creator_payments", ["created_at"], unique=False)

    op.create_table(
        "ai_images_creator_payment_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_no", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("process_type", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("note", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_ai_images_creator_payment_logs_order_no"),
        "ai_images_creator_payment_logs",
        ["order_no"],
        unique=False,
    )
    op.create_index(
        op.f("ix_ai_images_creator_payment_logs_user_id"),
        "ai_images_creator_payment_logs",
        ["user_id"],
        unique=False,
    )

    op.create_table(
        "templates",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("preview_image", sa.String(), nullable=False),
        sa.Column("base_prompt", sa.Text(), nullable=False),
        sa.Column("style_id", sa.String(length=50), nullable=True),
        sa.Column("requires_image", sa.Boolean(), nullable=False),
        sa.Column("prompt_required", sa.Boolean(), nullable=False),
        sa.Column("prompt_guide", sa.Text(), nullable=True),
        sa.Column("prompt_placeholder", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("use_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_templates_status"), "templates", ["status"], unique=False)
    op.create_index(op.f("ix_templates_use_count"), "templates", ["use_count"], unique=False)
    op.create_index(op.f("ix_templates_created_at"), "templates", ["created_at"], unique=False)

    op.create_table(
        "ai_images_creator_history",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("style", sa.String(), nullable=True),
        sa.Column("aspect_ratio", sa.String(), nullable=True),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_ai_images_creator_history_user_id"), "ai_images_creator_history", ["user_id"], unique=False)
    op.create_index(op.f("ix_ai_images_creator_history_task_id"), "ai_images_creator_history", ["task_id"], unique=False)
    op.create_index(
        op.f("ix_ai_images_creator_history_created_at"),
        "ai_images_creator_history",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("ai_images_creator_history")
    op.drop_table("templates")
    op.drop_table("ai_images_creator_payment_logs")
    op.drop_table("ai_images_creator_payments")
    op.drop_table("image_tasks")
    op.drop_table("ai_images_creator_credit_logs")
    op.drop_table("ai_images_creator_credits")
    op.drop_table("users")
