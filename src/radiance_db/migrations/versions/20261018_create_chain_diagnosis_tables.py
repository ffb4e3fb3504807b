"""Create chain_diagnosis_sessions and radiance_chat_messages.

Initial schema: one row per diagnosis session with a JSONB column and a
raw text column per stage, plus the follow-up chat table whose rows are
removed with their session.

Revision ID: 20261018_chain
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

# revision identifiers, used by Alembic.
revision = "20261018_chain"
down_revision = None
branch_labels = None
depends_on = None

_STAGES = (
    "medical_analyst",
    "general_physician",
    "specialist_doctor",
    "pathologist",
    "nutritionist",
    "pharmacist",
    "follow_up_specialist",
    "summarizer",
)


def upgrade() -> None:
    op.create_table(
        "chain_diagnosis_sessions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'in_progress'"),
        ),
        sa.Column(
            "current_step",
            sa.SmallInteger,
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("user_input", JSONB, nullable=False),
        *[sa.Column(f"{stage}_response", JSONB, nullable=True) for stage in _STAGES],
        *[sa.Column(f"raw_{stage}_response", sa.Text, nullable=True) for stage in _STAGES],
        sa.Column(
            "created_at",
            TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint("current_step BETWEEN 0 AND 8", name="ck_current_step_range"),
        sa.CheckConstraint(
            "status IN ('in_progress', 'completed', 'error')",
            name="ck_status_values",
        ),
        sa.CheckConstraint(
            "status != 'completed' OR current_step = 8",
            name="ck_completed_at_final_step",
        ),
    )
    op.create_index(
        "ix_chain_diagnosis_sessions_user_id", "chain_diagnosis_sessions", ["user_id"],
    )
    op.create_index(
        "ix_chain_sessions_created_at", "chain_diagnosis_sessions", ["created_at"],
    )
    op.create_index("ix_chain_sessions_status", "chain_diagnosis_sessions", ["status"])

    op.create_table(
        "radiance_chat_messages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "session_id",
            UUID(as_uuid=True),
            sa.ForeignKey("chain_diagnosis_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column(
            "created_at",
            TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_chat_messages_session_user",
        "radiance_chat_messages",
        ["session_id", "user_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_chat_messages_session_user", table_name="radiance_chat_messages")
    op.drop_table("radiance_chat_messages")
    op.drop_index("ix_chain_sessions_status", table_name="chain_diagnosis_sessions")
    op.drop_index("ix_chain_sessions_created_at", table_name="chain_diagnosis_sessions")
    op.drop_index(
        "ix_chain_diagnosis_sessions_user_id", table_name="chain_diagnosis_sessions",
    )
    op.drop_table("chain_diagnosis_sessions")
