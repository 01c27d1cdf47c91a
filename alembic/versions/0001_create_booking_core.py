from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("service_category", sa.String(), nullable=True),
        sa.Column("provider_id", sa.String(), nullable=True),
        sa.Column("previous_provider_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("matching_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accept_deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("work_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("cancellation_notes", sa.Text(), nullable=True),
        sa.Column("cancellation_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("refund_reference_id", sa.String(), nullable=True),
        sa.Column("customer_ref", sa.String(), nullable=True),
        sa.Column("payment_reference_id", sa.String(), nullable=True),
        sa.Column("payment_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("urgency", sa.String(), nullable=False, server_default="normal"),
        sa.Column("search_radius_km", sa.Float(), nullable=True),
        sa.Column("search_wave", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("customer_rating", sa.Integer(), nullable=True),
        sa.Column("customer_review", sa.Text(), nullable=True),
        sa.Column("needs_manual_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("automation_halted", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"], unique=False)
    op.create_index("ix_bookings_service_id", "bookings", ["service_id"], unique=False)
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_matching_expires_at", "bookings", ["matching_expires_at"], unique=False)

    op.create_table(
        "job_requests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("wave", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("distance_km", sa.Float(), nullable=False),
        sa.Column("quoted_price", sa.Numeric(12, 2), nullable=True),
        sa.UniqueConstraint("booking_id", "provider_id", name="uq_job_requests_booking_provider"),
    )
    op.create_index("ix_job_requests_booking_id", "job_requests", ["booking_id"], unique=False)
    op.create_index("ix_job_requests_provider_id", "job_requests", ["provider_id"], unique=False)
    op.create_index("ix_job_requests_status_expires", "job_requests", ["status", "expires_at"], unique=False)
    op.create_index(
        "uq_job_requests_one_accepted",
        "job_requests",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text("status = 'accepted'"),
    )

    op.create_table(
        "cancellations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("previous_status", sa.String(32), nullable=False),
        sa.Column("new_status", sa.String(32), nullable=False),
        sa.Column("cancellation_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("refund_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_operation_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("booking_id", "idempotency_key", name="uq_cancellations_booking_key"),
    )
    op.create_index("ix_cancellations_booking_id", "cancellations", ["booking_id"], unique=False)

    op.create_table(
        "receipts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False, unique=True),
        sa.Column("receipt_number", sa.String(), nullable=False, unique=True),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "payment_operations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("cancellation_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_operations_booking_id", "payment_operations", ["booking_id"], unique=False)
    op.create_index("ix_payment_operations_due", "payment_operations", ["status", "next_attempt_at"], unique=False)

def downgrade():
    op.drop_index("ix_payment_operations_due", table_name="payment_operations")
    op.drop_index("ix_payment_operations_booking_id", table_name="payment_operations")
    op.drop_table("payment_operations")
    op.drop_table("receipts")
    op.drop_index("ix_cancellations_booking_id", table_name="cancellations")
    op.drop_table("cancellations")
    op.drop_index("uq_job_requests_one_accepted", table_name="job_requests")
    op.drop_index("ix_job_requests_status_expires", table_name="job_requests")
    op.drop_index("ix_job_requests_provider_id", table_name="job_requests")
    op.drop_index("ix_job_requests_booking_id", table_name="job_requests")
    op.drop_table("job_requests")
    op.drop_index("ix_bookings_matching_expires_at", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_provider_id", table_name="bookings")
    op.drop_index("ix_bookings_service_id", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_table("bookings")
