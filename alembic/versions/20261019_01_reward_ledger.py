"""Reward ledger, Global Numbers, cascade rewards, vouchers, and QR transfers.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUM_TYPES: dict[str, tuple[str, ...]] = {
    "reward_wallet_owner_type": ("customer", "merchant"),
    "referral_referrer_type": ("customer", "merchant"),
    "ripple_referrer_type": ("customer", "merchant"),
    "affiliate_referrer_type": ("customer", "merchant"),
    "wallet_balance_type": ("reward_points", "income"),
    "wallet_transaction_type": ("credit", "debit"),
    "wallet_transaction_source": (
        "purchase",
        "admin_grant",
        "merchant_transfer",
        "qr_transfer_in",
        "qr_transfer_out",
        "affiliate_commission",
        "step_up_reward",
        "ripple_reward",
        "infinity_reward",
        "voucher_conversion",
        "instant_cashback",
        "merchant_referral_commission",
        "cash_out",
    ),
    "merchant_referral_status": ("approved", "flagged", "blocked"),
    "global_number_origin": ("earned", "infinity"),
    "shopping_voucher_status": ("active", "used", "expired"),
    "voucher_cash_out_status": ("pending", "approved", "rejected", "paid"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)
        )
    return columns


def upgrade() -> None:
    for name, values in ENUM_TYPES.items():
        quoted = ", ".join(f"'{value}'" for value in values)
        op.execute(f"""
            DO $$ BEGIN
                IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{name}') THEN
                    CREATE TYPE {name} AS ENUM ({quoted});
                END IF;
            END $$;
        """)

    op.create_table(
        "customers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("referral_code", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("referral_code", name="uq_customers_referral_code"),
    )
    op.create_index("ix_customers_email", "customers", ["email"], unique=True)

    op.create_table(
        "merchants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("business_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("referral_code", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("referral_code", name="uq_merchants_referral_code"),
    )
    op.create_index("ix_merchants_email", "merchants", ["email"], unique=True)

    op.create_table(
        "referrals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_type", _enum("referral_referrer_type"), nullable=False),
        sa.Column("referrer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("referee_customer_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("referee_merchant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("referral_code", sa.String(length=32), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("lifetime_commission_earned", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("total_ripple_rewards", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["referee_customer_id"], ["customers.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("referee_customer_id", name="uq_referrals_referee_customer_id"),
        sa.ForeignKeyConstraint(["referee_merchant_id"], ["merchants.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("referee_merchant_id", name="uq_referrals_referee_merchant_id"),
        sa.CheckConstraint(
            "(referee_customer_id IS NULL) <> (referee_merchant_id IS NULL)",
            name="ck_referrals_referral_single_referee",
        ),
    )
    op.create_index("ix_referrals_referrer", "referrals", ["referrer_type", "referrer_id"])

    op.create_table(
        "reward_wallets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_type", _enum("reward_wallet_owner_type"), nullable=False),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reward_point_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("accumulated_points", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("income_balance", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_transferred", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_income_earned", sa.Numeric(18, 2), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("owner_type", "owner_id", name="uq_reward_wallets_owner"),
        sa.CheckConstraint(
            "reward_point_balance >= 0",
            name="ck_reward_wallets_reward_point_balance_non_negative",
        ),
        sa.CheckConstraint(
            "accumulated_points >= 0 AND accumulated_points < 1500",
            name="ck_reward_wallets_accumulated_points_range",
        ),
        sa.CheckConstraint("income_balance >= 0", name="ck_reward_wallets_income_balance_non_negative"),
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("wallet_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("balance_type", _enum("wallet_balance_type"), nullable=False),
        sa.Column("transaction_type", _enum("wallet_transaction_type"), nullable=False),
        sa.Column("source", _enum("wallet_transaction_source"), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(18, 2), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(length=64), nullable=True),
        sa.Column("merchant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("source_transaction_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["wallet_id"], ["reward_wallets.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["source_transaction_id"], ["wallet_transactions.id"]),
        sa.CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
    )
    op.create_index("ix_wallet_transactions_wallet_created", "wallet_transactions", ["wallet_id", "created_at"])
    op.create_index("ix_wallet_transactions_reference", "wallet_transactions", ["source", "reference_id"])
    op.create_index("ix_wallet_transactions_merchant_id", "wallet_transactions", ["merchant_id"])
    op.create_index(
        "ix_wallet_transactions_source_transaction_id", "wallet_transactions", ["source_transaction_id"]
    )

    op.create_table(
        "global_number_counters",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("last_value >= 0", name="ck_global_number_counters_last_value_non_negative"),
    )
    op.execute("INSERT INTO global_number_counters (name, last_value) VALUES ('global_number', 0)")

    op.create_table(
        "infinity_cycles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("reward_numbers", sa.JSON(), nullable=False),
        sa.Column("reward_number_count", sa.Integer(), nullable=False),
        sa.Column("points_per_number", sa.BigInteger(), nullable=False),
        sa.Column("total_points", sa.BigInteger(), nullable=False),
        sa.Column("step_up_points_at_trigger", sa.BigInteger(), nullable=False),
        sa.Column("trigger_global_number", sa.BigInteger(), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.UniqueConstraint("customer_id", "cycle_number", name="uq_infinity_cycles_customer_cycle"),
    )
    op.create_index("ix_infinity_cycles_customer_id", "infinity_cycles", ["customer_id"])

    op.create_table(
        "global_serial_numbers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("global_number", sa.BigInteger(), nullable=False),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("origin", _enum("global_number_origin"), nullable=False, server_default="earned"),
        sa.Column("infinity_cycle_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("step_up_evaluated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["infinity_cycle_id"], ["infinity_cycles.id"]),
        sa.CheckConstraint("global_number > 0", name="ck_global_serial_numbers_global_number_positive"),
    )
    op.create_index(
        "ix_global_serial_numbers_global_number", "global_serial_numbers", ["global_number"], unique=True
    )
    op.create_index("ix_global_serial_numbers_customer_id", "global_serial_numbers", ["customer_id"])
    op.create_index(
        "ix_global_serial_numbers_step_up_evaluated_at", "global_serial_numbers", ["step_up_evaluated_at"]
    )

    op.create_table(
        "step_up_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("recipient_global_number", sa.BigInteger(), nullable=False),
        sa.Column("recipient_customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("trigger_global_number", sa.BigInteger(), nullable=False),
        sa.Column("milestone_factor", sa.Integer(), nullable=False),
        sa.Column("reward_points", sa.BigInteger(), nullable=False),
        sa.Column("is_awarded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("awarded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["recipient_global_number"], ["global_serial_numbers.global_number"]),
        sa.ForeignKeyConstraint(["trigger_global_number"], ["global_serial_numbers.global_number"]),
        sa.ForeignKeyConstraint(["recipient_customer_id"], ["customers.id"]),
        sa.UniqueConstraint(
            "recipient_global_number",
            "milestone_factor",
            name="uq_step_up_rewards_recipient_factor",
        ),
    )
    op.create_index("ix_step_up_rewards_recipient_customer_id", "step_up_rewards", ["recipient_customer_id"])

    op.create_table(
        "ripple_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source_step_up_reward_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("referrer_type", _enum("ripple_referrer_type"), nullable=False),
        sa.Column("referrer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("referred_customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("step_up_amount", sa.BigInteger(), nullable=False),
        sa.Column("ripple_amount", sa.BigInteger(), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["source_step_up_reward_id"], ["step_up_rewards.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["referred_customer_id"], ["customers.id"]),
        sa.UniqueConstraint("source_step_up_reward_id", name="uq_ripple_rewards_source_step_up_reward_id"),
    )
    op.create_index("ix_ripple_rewards_referrer_id", "ripple_rewards", ["referrer_id"])

    op.create_table(
        "affiliate_commissions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_type", _enum("affiliate_referrer_type"), nullable=False),
        sa.Column("referrer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("referred_customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_points", sa.BigInteger(), nullable=False),
        sa.Column("commission_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("source_transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["referred_customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["source_transaction_id"], ["wallet_transactions.id"]),
        sa.UniqueConstraint("source_transaction_id", name="uq_affiliate_commissions_source_transaction_id"),
    )
    op.create_index("ix_affiliate_commissions_referrer_id", "affiliate_commissions", ["referrer_id"])
    op.create_index(
        "ix_affiliate_commissions_referred_customer_id", "affiliate_commissions", ["referred_customer_id"]
    )

    op.create_table(
        "merchant_referral_commissions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("referred_merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_points", sa.BigInteger(), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 4), nullable=False),
        sa.Column("commission_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", _enum("merchant_referral_status"), nullable=False),
        sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reasons", sa.JSON(), nullable=False),
        sa.Column("risk_level", sa.String(length=16), nullable=False, server_default="low"),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["referrer_merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["referred_merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["source_transaction_id"], ["wallet_transactions.id"]),
        sa.UniqueConstraint(
            "source_transaction_id", name="uq_merchant_referral_commissions_source_transaction_id"
        ),
    )
    op.create_index(
        "ix_merchant_referral_commissions_referrer_merchant_id",
        "merchant_referral_commissions",
        ["referrer_merchant_id"],
    )
    op.create_index(
        "ix_merchant_referral_commissions_referred_merchant_id",
        "merchant_referral_commissions",
        ["referred_merchant_id"],
    )

    op.create_table(
        "shopping_vouchers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("voucher_code", sa.String(length=32), nullable=False),
        sa.Column("voucher_points", sa.BigInteger(), nullable=False),
        sa.Column("original_points", sa.BigInteger(), nullable=False),
        sa.Column("ratio", sa.Numeric(10, 8), nullable=False),
        sa.Column("status", _enum("shopping_voucher_status"), nullable=False, server_default="active"),
        sa.Column("conversion_transaction_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["conversion_transaction_id"], ["wallet_transactions.id"]),
        sa.UniqueConstraint("voucher_code", name="uq_shopping_vouchers_voucher_code"),
    )
    op.create_index("ix_shopping_vouchers_customer_id", "shopping_vouchers", ["customer_id"])
    op.create_index("ix_shopping_vouchers_merchant_id", "shopping_vouchers", ["merchant_id"])

    op.create_table(
        "voucher_cash_out_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("requested_amount", sa.BigInteger(), nullable=False),
        sa.Column("available_balance", sa.BigInteger(), nullable=False),
        sa.Column("status", _enum("voucher_cash_out_status"), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(length=32), nullable=True),
        sa.Column("payment_details", sa.JSON(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
    )
    op.create_index("ix_voucher_cash_out_requests_customer_id", "voucher_cash_out_requests", ["customer_id"])

    op.create_table(
        "qr_transfer_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("sender_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("receiver_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("points", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["sender_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["receiver_id"], ["customers.id"]),
        sa.CheckConstraint("points > 0", name="ck_qr_transfer_tokens_points_positive"),
    )
    op.create_index("ix_qr_transfer_tokens_code", "qr_transfer_tokens", ["code"], unique=True)
    op.create_index("ix_qr_transfer_tokens_sender_id", "qr_transfer_tokens", ["sender_id"])

    op.create_table(
        "cascade_redrive_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("triggered_by", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("queued_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summary", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("cascade_redrive_runs")

    op.drop_index("ix_qr_transfer_tokens_sender_id", table_name="qr_transfer_tokens")
    op.drop_index("ix_qr_transfer_tokens_code", table_name="qr_transfer_tokens")
    op.drop_table("qr_transfer_tokens")

    op.drop_index("ix_voucher_cash_out_requests_customer_id", table_name="voucher_cash_out_requests")
    op.drop_table("voucher_cash_out_requests")
    op.drop_index("ix_shopping_vouchers_merchant_id", table_name="shopping_vouchers")
    op.drop_index("ix_shopping_vouchers_customer_id", table_name="shopping_vouchers")
    op.drop_table("shopping_vouchers")

    op.drop_index(
        "ix_merchant_referral_commissions_referred_merchant_id", table_name="merchant_referral_commissions"
    )
    op.drop_index(
        "ix_merchant_referral_commissions_referrer_merchant_id", table_name="merchant_referral_commissions"
    )
    op.drop_table("merchant_referral_commissions")

    op.drop_index("ix_affiliate_commissions_referred_customer_id", table_name="affiliate_commissions")
    op.drop_index("ix_affiliate_commissions_referrer_id", table_name="affiliate_commissions")
    op.drop_table("affiliate_commissions")
    op.drop_index("ix_ripple_rewards_referrer_id", table_name="ripple_rewards")
    op.drop_table("ripple_rewards")
    op.drop_index("ix_step_up_rewards_recipient_customer_id", table_name="step_up_rewards")
    op.drop_table("step_up_rewards")

    op.drop_index("ix_global_serial_numbers_step_up_evaluated_at", table_name="global_serial_numbers")
    op.drop_index("ix_global_serial_numbers_customer_id", table_name="global_serial_numbers")
    op.drop_index("ix_global_serial_numbers_global_number", table_name="global_serial_numbers")
    op.drop_table("global_serial_numbers")
    op.drop_index("ix_infinity_cycles_customer_id", table_name="infinity_cycles")
    op.drop_table("infinity_cycles")
    op.drop_table("global_number_counters")

    op.drop_index("ix_wallet_transactions_source_transaction_id", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_merchant_id", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_reference", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_wallet_created", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")
    op.drop_table("reward_wallets")

    op.drop_index("ix_referrals_referrer", table_name="referrals")
    op.drop_table("referrals")
    op.drop_index("ix_merchants_email", table_name="merchants")
    op.drop_table("merchants")
    op.drop_index("ix_customers_email", table_name="customers")
    op.drop_table("customers")

    for name in reversed(list(ENUM_TYPES)):
        postgresql.ENUM(name=name).drop(op.get_bind(), checkfirst=True)
