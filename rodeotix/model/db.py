from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    JSON,
)


Base = declarative_base()

# ----------------------------
# Record kinds & statuses
# ----------------------------
KIND_TICKET = "ticket"
KIND_MERCHANDISE = "merchandise"
KIND_BAR_CREDIT = "bar_credit"

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_PAID = "paid"
STATUS_SHIPPED = "shipped"
STATUS_SCANNED = "scanned"
STATUS_DEPLETED = "depleted"
STATUS_REFUNDING = "refunding"
STATUS_REFUNDED = "refunded"
STATUS_CANCELLED = "cancelled"

# status a pending record moves to once the provider reports payment
PAID_STATUS = {
    KIND_TICKET: STATUS_CONFIRMED,
    KIND_MERCHANDISE: STATUS_PAID,
    KIND_BAR_CREDIT: STATUS_CONFIRMED,
}

# every status at or past payment, per kind
SETTLED_STATUSES = {
    KIND_TICKET: frozenset({
        STATUS_CONFIRMED, STATUS_SCANNED, STATUS_REFUNDING, STATUS_REFUNDED,
        STATUS_CANCELLED,
    }),
    KIND_MERCHANDISE: frozenset({STATUS_PAID, STATUS_SHIPPED}),
    KIND_BAR_CREDIT: frozenset({
        STATUS_CONFIRMED, STATUS_DEPLETED, STATUS_REFUNDING, STATUS_REFUNDED,
        STATUS_CANCELLED,
    }),
}

CODE_PREFIX = {
    KIND_TICKET: "CONF",
    KIND_MERCHANDISE: "ORDER",
    KIND_BAR_CREDIT: "BAR",
}

TICKET_TYPES = ("general", "child", "family")
WRISTBAND_CAP = {"general": 1, "child": 1, "family": 4}


def kind_from_code(code: str) -> str | None:
    """Order-number convention: the code prefix names the record kind."""
    code = (code or "").strip().upper()
    for kind, prefix in CODE_PREFIX.items():
        if code.startswith(prefix + "-"):
            return kind
    return None


# ----------------------------
# ORM models
# ----------------------------
class _RecordColumns:
    id = Column(String, primary_key=True)
    confirmation_code = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=STATUS_PENDING)

    customer_name = Column(String, nullable=False, default="")
    customer_email = Column(String, nullable=False, default="")
    customer_phone = Column(String, nullable=False, default="")

    total_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="cad")

    # stripe | moneris | mock
    provider = Column(String, nullable=False)
    # checkout session id (stripe) or preload ticket (moneris)
    gateway_session_id = Column(String, nullable=True, unique=True)
    # payment intent (stripe) or txn_num (moneris)
    provider_txn_id = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    # bumped by every conditional update
    version = Column(Integer, nullable=False, default=0)


class TicketOrder(_RecordColumns, Base):
    __tablename__ = "ticket_orders"
    event_id = Column(String, nullable=False)
    ticket_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_cents = Column(Integer, nullable=False)
    tax_cents = Column(Integer, nullable=False, default=0)

    scanned = Column(Boolean, nullable=False, default=False)
    scanned_at = Column(Float, nullable=True)
    rfid_tag_ids = Column(JSON, nullable=False, default=list)

    refund_cents = Column(Integer, nullable=True)
    refund_reason = Column(String, nullable=True)
    refunded_at = Column(Float, nullable=True)

    confirmation_sent_at = Column(Float, nullable=True)


class Order(_RecordColumns, Base):
    __tablename__ = "orders"
    items = Column(JSON, nullable=False, default=list)
    shipping_cents = Column(Integer, nullable=False, default=0)
    shipping_address = Column(JSON, nullable=True)
    tracking_number = Column(String, nullable=True)
    shipment_id = Column(String, nullable=True)


class BarCredit(_RecordColumns, Base):
    __tablename__ = "bar_credits"
    quantity = Column(Integer, nullable=False)
    remaining_credits = Column(Integer, nullable=False)
    price_per_credit_cents = Column(Integer, nullable=False)
    tax_cents = Column(Integer, nullable=False, default=0)

    refund_cents = Column(Integer, nullable=True)
    refund_reason = Column(String, nullable=True)
    refunded_at = Column(Float, nullable=True)

    confirmation_sent_at = Column(Float, nullable=True)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


MODELS = {
    KIND_TICKET: TicketOrder,
    KIND_MERCHANDISE: Order,
    KIND_BAR_CREDIT: BarCredit,
}
