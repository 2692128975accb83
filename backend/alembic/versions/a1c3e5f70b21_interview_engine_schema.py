from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1c3e5f70b21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("target_role", sa.String(length=255), nullable=True),
        sa.Column("experience_level", sa.String(length=50), nullable=True),
        sa.Column("resume_s3_key", sa.String(length=1024), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "interviews",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=255), nullable=False),
        sa.Column("focus_area", sa.String(length=255), nullable=True),
        sa.Column("level", sa.String(length=100), nullable=True),
        sa.Column("language", sa.String(length=50), nullable=False, server_default="English"),
        sa.Column("jd", sa.Text(), nullable=True),
        sa.Column("has_resume", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_questions", sa.Integer(), nullable=False, server_default="7"),
        # string-based enum storage for portability
        sa.Column("status", sa.String(length=11), nullable=False, server_default="IN_PROGRESS"),
        sa.Column("duration_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("question_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("turn_counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("feedback", sa.JSON(), nullable=True),
        sa.Column("total_input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("interaction_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "interaction_id", name="uq_interviews_user_interaction"),
    )
    op.create_index("ix_interviews_user_id", "interviews", ["user_id"])
    op.create_index("ix_interviews_user_updated", "interviews", ["user_id", "updated_at"])

    op.create_table(
        "turns",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("interview_id", sa.String(length=36), sa.ForeignKey("interviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=5), nullable=False),
        sa.Column("kind", sa.String(length=9), nullable=False, server_default="message"),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("audio_key", sa.String(length=1024), nullable=True),
        sa.Column("audio_mime", sa.String(length=255), nullable=True),
        sa.Column("audio_duration_seconds", sa.Float(), nullable=True),
        sa.Column("tts_audio_key", sa.String(length=1024), nullable=True),
        sa.Column("question_index", sa.Integer(), nullable=True),
        sa.Column("interaction_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("interview_id", "seq", name="uq_turns_interview_seq"),
    )
    op.create_index("ix_turns_interview_id", "turns", ["interview_id"])
    op.create_index("ix_turns_interaction_id", "turns", ["interaction_id"])
    op.create_index("ix_turns_interview_created_seq", "turns", ["interview_id", "created_at", "seq"])

    op.create_table(
        "audio_recordings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("interview_id", sa.String(length=36), sa.ForeignKey("interviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("question_index", sa.Integer(), nullable=False),
        sa.Column("blob_key", sa.String(length=1024), nullable=False),
        sa.Column("mime_type", sa.String(length=255), nullable=False, server_default="audio/webm"),
        sa.Column("duration_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("interaction_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("interview_id", "question_index", name="uq_recordings_interview_question"),
    )
    op.create_index("ix_audio_recordings_interview_id", "audio_recordings", ["interview_id"])

    op.create_table(
        "pending_audio_bindings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("interview_id", sa.String(length=36), sa.ForeignKey("interviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("question_index", sa.Integer(), nullable=False),
        sa.Column(
            "recording_id",
            sa.String(length=36),
            sa.ForeignKey("audio_recordings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("interview_id", "question_index", name="uq_pending_interview_question"),
    )

    op.create_table(
        "token_usage",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("interview_id", sa.String(length=36), sa.ForeignKey("interviews.id", ondelete="CASCADE"), nullable=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("operation", sa.String(length=50), nullable=False),
        sa.Column("model", sa.String(length=255), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_token_usage_interview_id", "token_usage", ["interview_id"])

    op.create_table(
        "transcript_cache",
        sa.Column("blob_key", sa.String(length=1024), primary_key=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade():
    op.drop_table("transcript_cache")
    op.drop_index("ix_token_usage_interview_id", table_name="token_usage")
    op.drop_table("token_usage")
    op.drop_table("pending_audio_bindings")
    op.drop_index("ix_audio_recordings_interview_id", table_name="audio_recordings")
    op.drop_table("audio_recordings")
    op.drop_index("ix_turns_interview_created_seq", table_name="turns")
    op.drop_index("ix_turns_interaction_id", table_name="turns")
    op.drop_index("ix_turns_interview_id", table_name="turns")
    op.drop_table("turns")
    op.drop_index("ix_interviews_user_updated", table_name="interviews")
    op.drop_index("ix_interviews_user_id", table_name="interviews")
    op.drop_table("interviews")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
