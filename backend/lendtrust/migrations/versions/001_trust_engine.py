"""Trust engine schema: accounts, loans, risk ledger, persistent identities.

Revision ID: 001
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

# Enum labels are the Python member names, matching SQLAlchemy's Enum() default
_ENUMS = {
    "userrole": ("BORROWER", "LENDER", "ADMIN"),
    "riskstate": ("NORMAL", "RISKY", "IMPROVED"),
    "loanstatus": ("ACTIVE", "REPAID", "DEFAULTED", "CANCELLED"),
    "riskreason": ("REPEATED_DEFAULTS", "FRAUD", "FALSE_INFORMATION", "HARASSMENT", "OTHER"),
    "fingerprintkind": ("EMAIL", "PHONE", "NATIONAL_ID"),
    "errorseverity": ("INFO", "WARNING", "ERROR", "CRITICAL"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    for name, labels in _ENUMS.items():
        postgresql.ENUM(*labels, name=name).create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("national_id", sa.String(50), nullable=True),
        sa.Column("company_name", sa.String(200), nullable=True),
        sa.Column("role", _enum("userrole"), nullable=False, server_default="BORROWER"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("risk_state", _enum("riskstate"), nullable=False, server_default="NORMAL"),
        sa.Column("reputation_score", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("total_loans", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("loans_repaid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("loans_defaulted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "reputation_score >= 0 AND reputation_score <= 100",
            name="ck_users_reputation_score_range",
        ),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "loans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("borrower_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("lender_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("principal", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_outstanding", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", _enum("loanstatus"), nullable=False, server_default="ACTIVE"),
        sa.Column("repaid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_loans_borrower_id", "loans", ["borrower_id"])
    op.create_index("ix_loans_lender_id", "loans", ["lender_id"])

    op.create_table(
        "risk_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("borrower_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reported_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("reporter_key", sa.String(40), nullable=False),
        sa.Column("reason", _enum("riskreason"), nullable=False),
        sa.Column("amount_owed", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("evidence", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("is_system_generated", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("loan_id", sa.Integer(), sa.ForeignKey("loans.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resolved_by_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount_owed >= 0", name="ck_risk_entries_amount_owed"),
    )
    op.create_index("ix_risk_entries_borrower_id", "risk_entries", ["borrower_id"])
    op.create_index("ix_risk_entries_status", "risk_entries", ["status"])
    op.create_index(
        "uq_risk_entries_active_reporter",
        "risk_entries",
        ["borrower_id", "reporter_key"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "risk_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("borrower_id", sa.Integer(), nullable=False),
        sa.Column("risk_entry_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("performed_by_id", sa.Integer(), nullable=True),
        sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_risk_history_borrower_id", "risk_history", ["borrower_id"])
    op.create_index("ix_risk_history_performed_at", "risk_history", ["performed_at"])

    op.create_table(
        "persistent_identities",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("times_reported", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount_owed", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("account_deletions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reregistration_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_account_deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merged_into_id", sa.Integer(), sa.ForeignKey("persistent_identities.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_persistent_identities_merged_into_id", "persistent_identities", ["merged_into_id"])

    op.create_table(
        "identity_fingerprints",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identity_id", sa.Integer(), sa.ForeignKey("persistent_identities.id"), nullable=False),
        sa.Column("kind", _enum("fingerprintkind"), nullable=False),
        sa.Column("digest", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("kind", "digest", name="uq_identity_fingerprints_kind_digest"),
    )
    op.create_index("ix_identity_fingerprints_identity_id", "identity_fingerprints", ["identity_id"])

    op.create_table(
        "identity_reports",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identity_id", sa.Integer(), sa.ForeignKey("persistent_identities.id"), nullable=False),
        sa.Column(
            "risk_entry_id", sa.Integer(),
            sa.ForeignKey("risk_entries.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("reporter_key", sa.String(40), nullable=False),
        sa.Column("reason", _enum("riskreason"), nullable=False),
        sa.Column("amount_owed", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("identity_id", "risk_entry_id", name="uq_identity_reports_entry"),
    )
    op.create_index("ix_identity_reports_identity_id", "identity_reports", ["identity_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_type", "entity_id", "created_at"])

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("severity", _enum("errorseverity"), nullable=False, server_default="ERROR"),
        sa.Column("error_type", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("traceback", sa.Text(), nullable=True),
        sa.Column("module", sa.String(300), nullable=True),
        sa.Column("function_name", sa.String(200), nullable=True),
        sa.Column("request_method", sa.String(10), nullable=True),
        sa.Column("request_path", sa.String(500), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_time_ms", sa.Float(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_error_logs_created_at", "error_logs", ["created_at"])
    op.create_index("ix_error_logs_severity", "error_logs", ["severity"])


def downgrade() -> None:
    tables = [
        "error_logs", "audit_log", "identity_reports", "identity_fingerprints",
        "persistent_identities", "risk_history", "risk_entries", "loans", "users",
    ]
    for t in tables:
        op.drop_table(t)
    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
