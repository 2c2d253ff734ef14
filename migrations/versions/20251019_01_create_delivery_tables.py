"""create recipients, questions, delivery_queue and open_interactions

Revision ID: 20251019_01
Revises: None
Create Date: 2025-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20251019_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "recipients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("phone_number", sa.String(length=32), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("preferred_time", sa.String(length=5), nullable=False, server_default="09:00"),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="America/New_York"),
        sa.Column("category_preferences", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("questions_answered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("correct_answers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "questions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("question_text", sa.Text(), nullable=False),
        sa.Column("option_a", sa.Text(), nullable=False),
        sa.Column("option_b", sa.Text(), nullable=False),
        sa.Column("option_c", sa.Text(), nullable=False),
        sa.Column("option_d", sa.Text(), nullable=False),
        sa.Column("correct_answer", sa.String(length=1), nullable=False),
        sa.Column("explanation", sa.Text(), nullable=False, server_default=""),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_questions_category", "questions", ["category"])

    op.create_table(
        "delivery_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("recipients.id"), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_id", sa.Integer(), sa.ForeignKey("questions.id"), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("attempts IN (0, 1)", name="ck_delivery_queue_attempts"),
        sa.CheckConstraint("status IN ('pending', 'sent', 'failed')", name="ck_delivery_queue_status"),
    )
    op.create_index("ix_delivery_queue_recipient_id", "delivery_queue", ["recipient_id"])
    op.create_index("ix_delivery_queue_due", "delivery_queue", ["status", "attempts", "scheduled_for"])
    op.create_index(
        "uq_delivery_queue_live_slot",
        "delivery_queue",
        ["recipient_id", "scheduled_for"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
        sqlite_where=sa.text("status <> 'failed'"),
    )

    op.create_table(
        "open_interactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.Integer(), sa.ForeignKey("recipients.id"), nullable=False),
        sa.Column("content_id", sa.Integer(), sa.ForeignKey("questions.id"), nullable=False),
        sa.Column("response", sa.String(length=16), nullable=True),
        sa.Column("is_correct", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("points_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_open_interactions_recipient_id", "open_interactions", ["recipient_id"])
    op.create_index(
        "uq_open_interactions_one_open",
        "open_interactions",
        ["recipient_id"],
        unique=True,
        postgresql_where=sa.text("response IS NULL"),
        sqlite_where=sa.text("response IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_open_interactions_one_open", table_name="open_interactions")
    op.drop_index("ix_open_interactions_recipient_id", table_name="open_interactions")
    op.drop_table("open_interactions")
    op.drop_index("uq_delivery_queue_live_slot", table_name="delivery_queue")
    op.drop_index("ix_delivery_queue_due", table_name="delivery_queue")
    op.drop_index("ix_delivery_queue_recipient_id", table_name="delivery_queue")
    op.drop_table("delivery_queue")
    op.drop_index("ix_questions_category", table_name="questions")
    op.drop_table("questions")
    op.drop_table("recipients")
