"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
    ]


def _audit_columns() -> list:
    return [
        *_timestamps(),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("updated_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["updated_by_user_id"], ["users.id"]),
    ]


def upgrade() -> None:
    webhook_source = sa.Enum("heyflow", "stripe", name="webhook_source")
    invoice_status = sa.Enum(
        "draft", "open", "paid", "void", "uncollectible", "refunded", name="invoice_status"
    )
    payment_method = sa.Enum(
        "card", "manual", "cash", "check", "bank_transfer", "other", name="payment_method"
    )
    payment_status = sa.Enum(
        "pending", "succeeded", "failed", "refunded", "disputed", name="payment_status"
    )
    soap_note_status = sa.Enum("pending", "approved", "rejected", name="soap_note_status")
    mirror_mode = sa.Enum(
        "created_invoice", "imported_invoice", "unmatched", "failed", name="mirror_mode"
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("auth0_sub", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("full_name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("credentials", sa.String(length=64), nullable=True),
        sa.Column("roles", sa.JSON(), nullable=False),
        sa.Column("language", sa.String(length=8), nullable=False, server_default="en"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("auth0_sub"),
    )
    op.create_index("ix_users_auth0_sub", "users", ["auth0_sub"])
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_email", sa.String(length=320), nullable=True),
        sa.Column("origin", sa.String(length=32), nullable=False, server_default="api"),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.String(length=120), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("before_json", sa.JSON(), nullable=True),
        sa.Column("after_json", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("patient_id", sa.String(length=16), nullable=True),
        sa.Column("first_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("last_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("gender", sa.String(length=32), nullable=True),
        sa.Column("language", sa.String(length=8), nullable=False, server_default="en"),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("address_house", sa.String(length=50), nullable=True),
        sa.Column("address_street", sa.String(length=200), nullable=True),
        sa.Column("apartment_number", sa.String(length=50), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("state", sa.String(length=64), nullable=True),
        sa.Column("zip", sa.String(length=20), nullable=True),
        sa.Column("height_inches", sa.Integer(), nullable=True),
        sa.Column("weight_lbs", sa.Float(), nullable=True),
        sa.Column("target_weight_lbs", sa.Float(), nullable=True),
        sa.Column("bmi", sa.Float(), nullable=True),
        sa.Column("form_type", sa.String(length=120), nullable=True),
        sa.Column("heyflow_submission_id", sa.String(length=255), nullable=True),
        sa.Column("consent_treatment", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("consent_telehealth", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("consent_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("membership_hashtags", sa.JSON(), nullable=False),
        sa.Column("assigned_rep", sa.String(length=120), nullable=True),
        sa.Column(
            "rep_form_submission", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("reviewed_by_user_id", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by_user_id", sa.Integer(), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["reviewed_by_user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["deleted_by_user_id"], ["users.id"]),
        sa.UniqueConstraint("patient_id"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("stripe_customer_id"),
    )
    op.create_index("ix_patients_patient_id", "patients", ["patient_id"])
    op.create_index("ix_patients_email", "patients", ["email"])
    op.create_index("ix_patients_stripe_customer_id", "patients", ["stripe_customer_id"])
    op.create_index("ix_patients_status", "patients", ["status"])
    op.create_index("ix_patients_deleted_at", "patients", ["deleted_at"])

    op.create_table(
        "weight_loss_intakes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("target_weight_lbs", sa.Float(), nullable=True),
        sa.Column("weight_loss_timeline", sa.String(length=120), nullable=True),
        sa.Column("previous_weight_loss_attempts", sa.Text(), nullable=True),
        sa.Column("exercise_frequency", sa.String(length=120), nullable=True),
        sa.Column("diet_restrictions", sa.JSON(), nullable=False),
        sa.Column("diabetes_type", sa.String(length=50), nullable=True),
        sa.Column("thyroid_condition", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("heart_conditions", sa.JSON(), nullable=False),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"]),
        sa.UniqueConstraint("patient_id"),
    )
    op.create_index("ix_weight_loss_intakes_patient_id", "weight_loss_intakes", ["patient_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source", webhook_source, nullable=False),
        sa.Column("provider_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unmapped_fields", sa.JSON(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=True),
        sa.Column(
            "received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")
        ),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"]),
        sa.UniqueConstraint("source", "provider_event_id", name="uq_webhook_events_source_event"),
    )
    op.create_index("ix_webhook_events_source", "webhook_events", ["source"])
    op.create_index("ix_webhook_events_processed", "webhook_events", ["processed"])
    op.create_index("ix_webhook_events_patient_id", "webhook_events", ["patient_id"])
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("stripe_invoice_id", sa.String(length=255), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("invoice_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("status", invoice_status, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tax_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_refunded_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"]),
        sa.UniqueConstraint("invoice_number"),
        sa.UniqueConstraint("stripe_invoice_id"),
    )
    op.create_index("ix_invoices_patient_id", "invoices", ["patient_id"])
    op.create_index("ix_invoices_invoice_number", "invoices", ["invoice_number"])
    op.create_index("ix_invoices_stripe_invoice_id", "invoices", ["stripe_invoice_id"])

    op.create_table(
        "invoice_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("service_type", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
    )
    op.create_index("ix_invoice_items_invoice_id", "invoice_items", ["invoice_id"])

    op.create_table(
        "invoice_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("amount_refunded_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("payment_method", payment_method, nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("stripe_charge_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("recorded_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.ForeignKeyConstraint(["recorded_by_user_id"], ["users.id"]),
        sa.UniqueConstraint("stripe_charge_id"),
    )
    op.create_index("ix_invoice_payments_invoice_id", "invoice_payments", ["invoice_id"])
    op.create_index("ix_invoice_payments_stripe_charge_id", "invoice_payments", ["stripe_charge_id"])
    op.create_index(
        "ix_invoice_payments_stripe_payment_intent_id",
        "invoice_payments",
        ["stripe_payment_intent_id"],
    )

    op.create_table(
        "soap_notes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("original_content", sa.Text(), nullable=True),
        sa.Column("status", soap_note_status, nullable=False),
        sa.Column("created_by", sa.String(length=120), nullable=False, server_default="BECCA AI"),
        sa.Column("approved_by", sa.Integer(), nullable=True),
        sa.Column("approved_by_name", sa.String(length=200), nullable=True),
        sa.Column("approved_by_credentials", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("edit_history", sa.JSON(), nullable=False),
        sa.Column("ai_model", sa.String(length=64), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"]),
        sa.ForeignKeyConstraint(["approved_by"], ["users.id"]),
    )
    op.create_index("ix_soap_notes_patient_id", "soap_notes", ["patient_id"])
    op.create_index("ix_soap_notes_status", "soap_notes", ["status"])

    op.create_table(
        "stripe_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("price_id", sa.String(length=255), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"]),
        sa.UniqueConstraint("stripe_subscription_id"),
    )
    op.create_index(
        "ix_stripe_subscriptions_stripe_subscription_id",
        "stripe_subscriptions",
        ["stripe_subscription_id"],
    )
    op.create_index(
        "ix_stripe_subscriptions_stripe_customer_id", "stripe_subscriptions", ["stripe_customer_id"]
    )
    op.create_index("ix_stripe_subscriptions_patient_id", "stripe_subscriptions", ["patient_id"])

    op.create_table(
        "external_payment_mirrors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("charge_id", sa.String(length=255), nullable=False),
        sa.Column("mode", mirror_mode, nullable=False),
        sa.Column("matched_patient_id", sa.Integer(), nullable=True),
        sa.Column("created_invoice_id", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["matched_patient_id"], ["patients.id"]),
        sa.UniqueConstraint("charge_id"),
    )
    op.create_index("ix_external_payment_mirrors_charge_id", "external_payment_mirrors", ["charge_id"])
    op.create_index(
        "ix_external_payment_mirrors_matched_patient_id",
        "external_payment_mirrors",
        ["matched_patient_id"],
    )


def downgrade() -> None:
    op.drop_table("external_payment_mirrors")
    op.drop_table("stripe_subscriptions")
    op.drop_table("soap_notes")
    op.drop_table("invoice_payments")
    op.drop_table("invoice_items")
    op.drop_table("invoices")
    op.drop_table("webhook_events")
    op.drop_table("weight_loss_intakes")
    op.drop_table("patients")
    op.drop_table("audit_logs")
    op.drop_table("users")

    bind = op.get_bind()
    for name in (
        "mirror_mode",
        "soap_note_status",
        "payment_status",
        "payment_method",
        "invoice_status",
        "webhook_source",
    ):
        sa.Enum(name=name).drop(bind, checkfirst=True)
