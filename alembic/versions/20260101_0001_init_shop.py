from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20260101_0001"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _pk():
    return sa.Column("id", sa.Uuid, primary_key=True)


def _ts(name="created_at"):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade():
    # --- profils / clients / produits ---
    op.create_table(
        "profiles",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("email", sa.String(length=180), nullable=True),
        sa.Column("full_name", sa.String(length=180), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="MAGASIN"),
        _ts(),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])
    op.create_table(
        "customers",
        _pk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=180), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        _ts(),
    )
    op.create_table(
        "products",
        _pk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("sku", sa.String(length=64), nullable=True),
        sa.Column("parent_id", sa.Uuid, sa.ForeignKey("products.id", ondelete="SET NULL"), nullable=True),
        sa.Column("product_type", sa.String(length=32), nullable=True),
        sa.Column("serial_number", sa.String(length=120), nullable=True),
        sa.Column("vat_type", sa.String(length=16), nullable=True),
        sa.Column("tax_rate", sa.Numeric(6, 4), nullable=True),
        sa.Column("sale_price_ht", sa.Numeric(12, 2), nullable=True),
        sa.Column("sale_price_ttc", sa.Numeric(12, 2), nullable=True),
        sa.Column("pro_price", sa.Numeric(12, 2), nullable=True),
    )
    op.create_index("ix_products_sku", "products", ["sku"])
    op.create_index("ix_products_parent_id", "products", ["parent_id"])
    op.create_table(
        "stock_groups",
        _pk(),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
    )
    op.create_table(
        "stocks",
        _pk(),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("group_id", sa.Uuid, sa.ForeignKey("stock_groups.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_table(
        "product_stocks",
        sa.Column("product_id", sa.Uuid, sa.ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("stock_id", sa.Uuid, sa.ForeignKey("stocks.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="0"),
    )

    # --- agenda ---
    op.create_table(
        "agenda_events",
        _pk(),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("event_date", sa.Date, nullable=False),
        sa.Column("event_time", sa.Time, nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="a_faire"),
        sa.Column("important", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("project", sa.String(length=120), nullable=True),
        sa.Column("custom_reminders", JSON, nullable=False),
        sa.Column("archived", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts(),
        _ts("updated_at"),
    )
    op.create_index("ix_agenda_events_user_id", "agenda_events", ["user_id"])
    op.create_index("ix_agenda_events_user_date", "agenda_events", ["user_id", "event_date"])
    op.create_table(
        "agenda_reminders_queue",
        _pk(),
        sa.Column("event_id", sa.Uuid, sa.ForeignKey("agenda_events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("delivered", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_agenda_reminders_queue_event_id", "agenda_reminders_queue", ["event_id"])
    op.create_index("ix_agenda_reminders_due", "agenda_reminders_queue", ["delivered", "run_at"])
    op.create_table(
        "agenda_reminders_log",
        _pk(),
        sa.Column("event_id", sa.Uuid, sa.ForeignKey("agenda_events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("reminder_type", sa.String(length=16), nullable=False),
        sa.Column("notification_id", sa.Uuid, nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("user_action", sa.String(length=16), nullable=True),
        sa.Column("action_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_agenda_reminders_log_event_id", "agenda_reminders_log", ["event_id"])

    op.create_table(
        "notifications",
        _pk(),
        sa.Column("user_id", sa.Uuid, nullable=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="info"),
        sa.Column("link", sa.String(length=255), nullable=True),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("metadata", JSON, nullable=True),
        _ts(),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    # --- réparations ---
    op.create_table(
        "repair_tickets",
        _pk(),
        sa.Column("customer_id", sa.Uuid, sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
        sa.Column("device_brand", sa.String(length=120), nullable=False),
        sa.Column("device_model", sa.String(length=120), nullable=False),
        sa.Column("device_color", sa.String(length=64), nullable=True),
        sa.Column("imei", sa.String(length=32), nullable=True),
        sa.Column("serial_number", sa.String(length=120), nullable=True),
        sa.Column("pin_code", sa.String(length=32), nullable=True),
        sa.Column("issue_description", sa.Text(), nullable=False, server_default=""),
        sa.Column("power_state", sa.String(length=16), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="quote_todo"),
        sa.Column("assigned_tech", sa.Uuid, nullable=True),
        sa.Column("invoice_id", sa.Uuid, nullable=True),
        sa.Column("cgv_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signature_url", sa.Text(), nullable=True),
        sa.Column("drying_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("drying_duration_min", sa.Integer, nullable=True),
        sa.Column("drying_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("drying_acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        _ts(),
        _ts("updated_at"),
    )
    op.create_index("ix_repair_tickets_customer_id", "repair_tickets", ["customer_id"])
    op.create_index("ix_repair_tickets_status", "repair_tickets", ["status"])
    op.create_table(
        "repair_status_history",
        _pk(),
        sa.Column("repair_id", sa.Uuid, sa.ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("old_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.Uuid, nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        _ts(),
    )
    op.create_index("ix_repair_status_history_repair_id", "repair_status_history", ["repair_id"])
    op.create_table(
        "repair_items",
        _pk(),
        sa.Column("repair_id", sa.Uuid, sa.ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Uuid, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("stock_id", sa.Uuid, sa.ForeignKey("stocks.id", ondelete="SET NULL"), nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("reserved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("purchase_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("vat_regime", sa.String(length=16), nullable=True),
        sa.Column("supplier_name", sa.String(length=120), nullable=True),
        sa.Column("expected_date", sa.Date, nullable=True),
        _ts(),
        sa.UniqueConstraint("repair_id", "product_id", "stock_id", name="uq_repair_items_repair_product_stock"),
    )
    op.create_index("ix_repair_items_repair_id", "repair_items", ["repair_id"])
    op.create_table(
        "repair_media",
        _pk(),
        sa.Column("repair_id", sa.Uuid, sa.ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("file_url", sa.Text(), nullable=False),
        _ts(),
    )
    op.create_index("ix_repair_media_repair_id", "repair_media", ["repair_id"])
    op.create_table(
        "repair_public_links",
        _pk(),
        sa.Column("repair_id", sa.Uuid, sa.ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts(),
    )
    op.create_index("ix_repair_public_links_repair_id", "repair_public_links", ["repair_id"])
    op.create_table(
        "repair_daily_logs",
        _pk(),
        sa.Column("log_date", sa.Date, nullable=False),
        sa.Column("parts_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("notifications_sent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("payload", JSON, nullable=True),
        _ts(),
    )
    op.create_table(
        "user_notification_settings",
        sa.Column("user_id", sa.Uuid, primary_key=True),
        sa.Column("daily_digest_hour", sa.Integer, nullable=True),
        sa.Column("active_days", JSON, nullable=True),
        sa.Column("enable_email", sa.Boolean, nullable=True),
        sa.Column("enable_popup", sa.Boolean, nullable=True),
    )
    op.create_table(
        "stock_reservations",
        _pk(),
        sa.Column("repair_id", sa.Uuid, sa.ForeignKey("repair_tickets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Uuid, nullable=False),
        sa.Column("stock_id", sa.Uuid, nullable=False),
        sa.Column("qty", sa.Integer, nullable=False),
        sa.Column("released", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts(),
    )
    op.create_index("ix_stock_reservations_repair_id", "stock_reservations", ["repair_id"])

    # --- facturation ---
    op.create_table(
        "invoices",
        _pk(),
        sa.Column("customer_id", sa.Uuid, nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        _ts(),
        _ts("updated_at"),
    )
    op.create_table(
        "invoice_items",
        _pk(),
        sa.Column("invoice_id", sa.Uuid, sa.ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Uuid, sa.ForeignKey("products.id"), nullable=False),
        sa.Column("stock_id", sa.Uuid, sa.ForeignKey("stocks.id"), nullable=True),
        sa.Column("qty", sa.Integer, nullable=False, server_default="1"),
        sa.Column("unit_price_ht", sa.Numeric(12, 2), nullable=True),
        sa.Column("tax_rate", sa.Numeric(6, 4), nullable=True),
    )
    op.create_index("ix_invoice_items_invoice_id", "invoice_items", ["invoice_id"])

    # --- dépôt-vente ---
    op.create_table(
        "consignments",
        _pk(),
        sa.Column("stock_id", sa.Uuid, sa.ForeignKey("stocks.id"), nullable=False),
        sa.Column("product_id", sa.Uuid, sa.ForeignKey("products.id"), nullable=False),
        sa.Column("customer_id", sa.Uuid, nullable=True),
        _ts(),
        sa.UniqueConstraint("stock_id", "product_id", name="uq_consignments_stock_product"),
    )
    op.create_table(
        "consignment_moves",
        _pk(),
        sa.Column("consignment_id", sa.Uuid, sa.ForeignKey("consignments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("stock_id", sa.Uuid, nullable=False),
        sa.Column("product_id", sa.Uuid, nullable=False),
        sa.Column("invoice_id", sa.Uuid, nullable=True),
        sa.Column("invoice_item_id", sa.Uuid, nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("qty", sa.Integer, nullable=False),
        sa.Column("unit_price_ht", sa.Numeric(12, 2), nullable=True),
        sa.Column("vat_rate", sa.Numeric(5, 4), nullable=True),
        sa.Column("vat_regime", sa.String(length=16), nullable=True),
        sa.Column("created_by", sa.Uuid, nullable=True),
        _ts(),
    )
    op.create_index("ix_consignment_moves_consignment_id", "consignment_moves", ["consignment_id"])
    op.create_index("ix_consignment_moves_stock_id", "consignment_moves", ["stock_id"])
    op.create_index("ix_consignment_moves_invoice_item_id", "consignment_moves", ["invoice_item_id"])
    op.create_table(
        "consignment_stock_customer_map",
        sa.Column("stock_id", sa.Uuid, sa.ForeignKey("stocks.id"), primary_key=True),
        sa.Column("customer_id", sa.Uuid, sa.ForeignKey("customers.id"), nullable=False),
    )

    # --- feuille de route ---
    op.create_table(
        "roadmap_templates",
        _pk(),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("day_of_week", sa.Integer, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("start_time", sa.Time, nullable=True),
        sa.Column("end_time", sa.Time, nullable=True),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("applies_from", sa.Date, nullable=False),
        _ts(),
        _ts("updated_at"),
    )
    op.create_index("ix_roadmap_templates_user_id", "roadmap_templates", ["user_id"])
    op.create_table(
        "roadmap_entries",
        _pk(),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("start_time", sa.Time, nullable=True),
        sa.Column("end_time", sa.Time, nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="todo"),
        sa.Column("origin", sa.String(length=16), nullable=False, server_default="manual"),
        sa.Column("template_id", sa.Uuid, sa.ForeignKey("roadmap_templates.id", ondelete="SET NULL"), nullable=True),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        _ts(),
        _ts("updated_at"),
    )
    op.create_index("ix_roadmap_entries_user_id", "roadmap_entries", ["user_id"])
    op.create_index("ix_roadmap_entries_user_date", "roadmap_entries", ["user_id", "date"])
    op.create_table(
        "roadmap_notifications",
        _pk(),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="in_app"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("event_id", sa.Uuid, nullable=True),
    )
    op.create_index("ix_roadmap_notifications_user_id", "roadmap_notifications", ["user_id"])
    op.create_table(
        "events",
        _pk(),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("start_time", sa.Time, nullable=True),
        sa.Column("end_time", sa.Time, nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("recurrence", sa.String(length=32), nullable=True),
        _ts(),
        _ts("updated_at"),
    )
    op.create_index("ix_events_user_id", "events", ["user_id"])
    op.create_table(
        "event_reminders",
        _pk(),
        sa.Column("event_id", sa.Uuid, sa.ForeignKey("events.id", ondelete="CASCADE"), nullable=False),
        sa.Column("days_before", sa.Integer, nullable=False, server_default="1"),
        sa.Column("at", sa.Time, nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="in_app"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_event_reminders_event_id", "event_reminders", ["event_id"])
    op.create_table(
        "user_settings_roadmap",
        sa.Column("user_id", sa.Uuid, primary_key=True),
        sa.Column("eod_hour", sa.Integer, nullable=True),
        sa.Column("default_reminder_days", JSON, nullable=True),
        sa.Column("telegram_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("telegram_chat_id", sa.String(length=64), nullable=True),
        sa.Column("telegram_mode", sa.String(length=16), nullable=False, server_default="shared"),
        _ts("updated_at"),
    )
    op.create_table(
        "user_telegram_bots",
        _pk(),
        sa.Column("user_id", sa.Uuid, nullable=False, unique=True),
        sa.Column("bot_username", sa.String(length=120), nullable=False),
        sa.Column("bot_token", sa.String(length=255), nullable=False),
        sa.Column("webhook_secret", sa.String(length=128), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=True),
        sa.Column("chat_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        _ts("updated_at"),
    )

    # --- marketplaces ---
    op.create_table(
        "marketplace_accounts",
        _pk(),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("environment", sa.String(length=16), nullable=False, server_default="production"),
        sa.Column("external_id", sa.String(length=120), nullable=True),
        sa.Column("label", sa.String(length=120), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.Uuid, nullable=True),
        _ts(),
        sa.UniqueConstraint("provider", "environment", "external_id", name="uq_marketplace_accounts_ext"),
    )
    op.create_table(
        "oauth_tokens",
        _pk(),
        sa.Column(
            "marketplace_account_id", sa.Uuid,
            sa.ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token_enc", sa.Text(), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("state_nonce", sa.String(length=128), nullable=True),
        sa.Column("environment", sa.String(length=16), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.Uuid, nullable=True),
        _ts(),
    )
    op.create_index("ix_oauth_tokens_marketplace_account_id", "oauth_tokens", ["marketplace_account_id"])
    op.create_index("ix_oauth_tokens_state_nonce", "oauth_tokens", ["state_nonce"])
    op.create_table(
        "sync_logs",
        _pk(),
        sa.Column("marketplace", sa.String(length=32), nullable=False),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", JSON, nullable=True),
        _ts(),
    )


def downgrade():
    for table in (
        "sync_logs", "oauth_tokens", "marketplace_accounts",
        "user_telegram_bots", "user_settings_roadmap", "event_reminders", "events",
        "roadmap_notifications", "roadmap_entries", "roadmap_templates",
        "consignment_stock_customer_map", "consignment_moves", "consignments",
        "invoice_items", "invoices",
        "stock_reservations", "user_notification_settings", "repair_daily_logs",
        "repair_public_links", "repair_media", "repair_items", "repair_status_history", "repair_tickets",
        "notifications", "agenda_reminders_log", "agenda_reminders_queue", "agenda_events",
        "product_stocks", "stocks", "stock_groups", "products", "customers", "profiles",
    ):
        op.drop_table(table)
