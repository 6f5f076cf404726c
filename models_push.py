from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, MetaData, String, Table, Text

# Both shapes share the table name; deployments have one or the other (or a
# hybrid carrying both column sets), so each lives in its own MetaData.
TABLE_NAME = "push_subscriptions"

document_metadata = MetaData()
structured_metadata = MetaData()


# Opaque JSON document, no endpoint column.
document_table = Table(
    TABLE_NAME,
    document_metadata,
    Column("id", Integer, primary_key=True),
    Column("subscription", JSON, nullable=False),
    Column("user_id", String(255), nullable=True),
    Column("is_active", Boolean, default=True, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_push_subscriptions_active", "is_active"),
)


# Discrete columns keyed by endpoint.
structured_table = Table(
    TABLE_NAME,
    structured_metadata,
    Column("id", Integer, primary_key=True),
    Column("endpoint", Text, unique=True, nullable=False),
    Column("p256dh_key", String(255), nullable=True),
    Column("auth_key", String(255), nullable=True),
    Column("user_id", String(255), nullable=True),
    Column("is_active", Boolean, default=True, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("ix_push_subscriptions_active", "is_active"),
)
