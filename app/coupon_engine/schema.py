"""
Coupon tables.

Mirrors the alembic migration so tests and `app.cli init-db` can create the
schema on SQLite without running migrations.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

coupons = Table(
    "coupons",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("name_en", String(255), nullable=False, default=""),
    Column("name_he", String(255), nullable=False, default=""),
    Column("description_en", Text),
    Column("description_he", Text),
    Column("discount_type", String(32), nullable=False),
    Column("discount_value", Numeric(10, 2)),
    Column("min_cart_value", Numeric(10, 2)),
    Column("starts_at", DateTime),
    Column("expires_at", DateTime),
    Column("usage_limit", Integer),
    Column("usage_count", Integer, nullable=False, default=0),
    Column("usage_limit_per_user", Integer),
    Column("per_user_only", Boolean, nullable=False, default=False),
    Column("stackable", Boolean, nullable=False, default=False),
    Column("auto_apply", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("priority", Integer, nullable=False, default=0),
    Column("eligible_products", Text),
    Column("bogo_buy_quantity", Integer),
    Column("bogo_get_quantity", Integer),
    Column("bogo_eligible_skus", Text),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

coupon_redemptions = Table(
    "coupon_redemptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("coupon_id", String(36), ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False),
    Column("user_identifier", String(255), nullable=False),
    Column("usage_count", Integer, nullable=False, default=0),
    Column("last_used_at", DateTime),
    UniqueConstraint("coupon_id", "user_identifier", name="uq_coupon_redemptions_user"),
)


def create_tables(engine) -> None:
    metadata.create_all(bind=engine)
