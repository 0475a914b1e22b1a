from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    Index,
    JSON,
    UniqueConstraint,
)


Base = declarative_base()


# payment status
PENDING = "pending"
PAID = "paid"
FAILED = "failed"
EXPIRED = "expired"
TERMINAL_STATUSES = frozenset({PAID, FAILED, EXPIRED})

# display progress of a paid warp, independent of the payment status
DISPLAY_QUEUED = "queued"
DISPLAY_DISPLAYING = "displaying"
DISPLAY_DISPLAYED = "displayed"

KIND_WARP = "warp"
KIND_SONG_REQUEST = "song_request"

PLAYBACK_STATES = ("queued", "playing", "played", "rejected")


# ----------------------------
# ORM models
# ----------------------------
class Store(Base):
    __tablename__ = "stores"
    id = Column(String, primary_key=True)
    slug = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    timezone = Column(String, nullable=False, default="Asia/Bangkok")
    created_at = Column(Float, nullable=False)


class WarpProfile(Base):
    __tablename__ = "warp_profiles"
    __table_args__ = (
        UniqueConstraint("store_id", "code", name="uq_profile_store_code"),
    )
    id = Column(String, primary_key=True)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False,
                      index=True)
    code = Column(String, nullable=False)
    name = Column(String, nullable=False)
    social_link = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class WarpPackage(Base):
    __tablename__ = "warp_packages"
    __table_args__ = (
        UniqueConstraint("store_id", "seconds", name="uq_package_seconds"),
        UniqueConstraint("store_id", "name", name="uq_package_name"),
    )
    id = Column(String, primary_key=True)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False,
                      index=True)
    name = Column(String, nullable=False)
    seconds = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_txn_store_status_created", "store_id", "status",
              "created_at"),
        Index("ix_txn_store_code_created", "store_id", "code", "created_at"),
    )
    id = Column(String, primary_key=True)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False)
    # warp | song_request
    kind = Column(String, nullable=False, default=KIND_WARP)
    code = Column(String, nullable=False)
    profile_id = Column(String, nullable=True)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=True)
    customer_avatar = Column(String, nullable=True)
    social_link = Column(String, nullable=True)
    quote = Column(String, nullable=True)
    display_seconds = Column(Integer, nullable=False, default=0)
    package_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)  # whole currency units
    currency = Column(String, nullable=False, default="THB")

    # pending | paid | failed | expired
    status = Column(String, nullable=False, default=PENDING)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    # mock | stripe
    provider = Column(String, nullable=False)
    # checkout session / payment intent / mock session id
    provider_ref = Column(String, nullable=True, unique=True)
    payment_method = Column(String, nullable=False, default="checkout")
    checkout_url = Column(String, nullable=True)
    provider_status = Column(String, nullable=True)
    last_synced_at = Column(Float, nullable=True)
    promptpay = Column(JSON, nullable=True)

    # queued | displaying | displayed
    display_state = Column(String, nullable=False, default=DISPLAY_QUEUED)
    display_started_at = Column(Float, nullable=True)
    display_completed_at = Column(Float, nullable=True)


class SongRequest(Base):
    __tablename__ = "song_requests"
    id = Column(String, primary_key=True)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False,
                      index=True)
    transaction_id = Column(String, ForeignKey("transactions.id"),
                            nullable=False, unique=True)
    song_title = Column(String, nullable=False)
    artist_name = Column(String, nullable=True)
    message = Column(String, nullable=True)
    requester_name = Column(String, nullable=False)
    requester_instagram = Column(String, nullable=True)
    # queued | playing | played | rejected
    playback_state = Column(String, nullable=False, default="queued")
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class ActivityEntry(Base):
    __tablename__ = "activity_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(String, nullable=False, index=True)
    transaction_id = Column(String, ForeignKey("transactions.id"),
                            nullable=False, index=True)
    action = Column(String, nullable=False)
    description = Column(String, nullable=True)
    actor = Column(String, nullable=False, default="system")
    created_at = Column(Float, nullable=False)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
