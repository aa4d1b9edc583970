from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    UniqueConstraint,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Purchase(Base):
    __tablename__ = "purchases"
    # artifact id
    id = Column(String, primary_key=True)
    customer_email = Column(String, nullable=True)
    session_id = Column(String, nullable=True)

    # pending | paid | expired
    status = Column(String, nullable=False, default="pending")
    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    expired_at = Column(Float, nullable=True)


class PrintOrder(Base):
    __tablename__ = "print_orders"
    # gateway session id, the external correlation key
    id = Column(String, primary_key=True)
    artifact_id = Column(String, nullable=False, index=True)
    size = Column(String, nullable=False)
    customer_email = Column(String, nullable=True)
    # json snapshot, never rewritten
    shipping_address = Column(Text, nullable=False)

    # pending | image_uploaded | product_created | created | production
    # | shipped | failed
    status = Column(String, nullable=False, default="pending")
    provider_image_id = Column(String, nullable=True)
    provider_product_id = Column(String, nullable=True)
    provider_order_id = Column(String, nullable=True, unique=True)
    tracking_number = Column(String, nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    sent_to_production_at = Column(Float, nullable=True)
    shipped_at = Column(Float, nullable=True)


class Customer(Base):
    __tablename__ = "customers"
    email = Column(String, primary_key=True)
    first_purchase_at = Column(Float, nullable=False)
    last_purchase_at = Column(Float, nullable=False)
    # digital | canvas | pack
    last_purchase_type = Column(String, nullable=False)
    last_artifact_id = Column(String, nullable=True)
    last_session_id = Column(String, nullable=True)
    purchase_count = Column(Integer, nullable=False, default=1)


class Recipient(Base):
    __tablename__ = "recipients"
    __table_args__ = (
        UniqueConstraint("sequence", "email", name="uq_recipient_seq_email"),
        Index("idx_recipients_cohort", "sequence", "has_converted",
              "enrolled_at"),
    )
    id = Column(String, primary_key=True)
    sequence = Column(String, nullable=False)
    email = Column(String, nullable=False)
    enrolled_at = Column(Float, nullable=False)
    artifact_id = Column(String, nullable=True)
    context = Column(Text, nullable=True)

    last_step_sent = Column(Integer, nullable=False, default=0)
    last_sent_at = Column(Float, nullable=True)
    has_converted = Column(Boolean, nullable=False, default=False)
    unsubscribed = Column(Boolean, nullable=False, default=False)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    effect_name = Column(String, primary_key=True)
    event_id = Column(String, primary_key=True)
    completed_at = Column(Float, nullable=False)
