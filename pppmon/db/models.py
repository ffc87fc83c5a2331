from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Float, Boolean, Numeric, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from datetime import datetime
from decimal import Decimal
from pppmon.db.database import Base  # Import Base from database.py


class ByteCounter(TypeDecorator):
    """Unsigned 64-bit byte counter, read back as a Python int.

    Stored as NUMERIC(20, 0). SQLite has no such type (its INTEGER is signed
    64-bit and NUMERIC binds through float), so there the digits go in a string.
    """
    impl = Numeric(20, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(20))
        return dialect.type_descriptor(Numeric(20, 0))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return str(int(value))
        return Decimal(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class Router(Base):
    __tablename__ = "routers"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    host = Column(String, nullable=False)
    port = Column(Integer, nullable=False, default=8728)
    username = Column(String, nullable=False)
    password = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    isolate_profile = Column(String, nullable=True)
    telegram_bot_token = Column(String, nullable=True)
    telegram_chat_id = Column(String, nullable=True)
    last_sync = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class PPPUser(Base):
    __tablename__ = "ppp_users"
    __table_args__ = (UniqueConstraint("router_id", "secret_name", name="uq_ppp_users_router_secret"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    router_id = Column(Integer, ForeignKey("routers.id", ondelete="CASCADE"), nullable=False, index=True)
    secret_name = Column(String, nullable=False)
    profile = Column(String, nullable=True)
    comment = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    # Set only while quarantined; the profile to restore to
    original_profile = Column(String, nullable=True)
    current_tx_bytes = Column(ByteCounter, nullable=False, default=0)
    current_rx_bytes = Column(ByteCounter, nullable=False, default=0)
    accumulated_tx_bytes = Column(ByteCounter, nullable=False, default=0)
    accumulated_rx_bytes = Column(ByteCounter, nullable=False, default=0)
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen_online = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class UsageHistory(Base):
    __tablename__ = "usage_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # History outlives the subscriber row, so the link is nulled rather than cascaded
    ppp_user_id = Column(Integer, ForeignKey("ppp_users.id", ondelete="SET NULL"), nullable=True, index=True)
    router_id = Column(Integer, nullable=False, index=True)
    secret_name = Column(String, nullable=False)
    tx_bytes = Column(ByteCounter, nullable=False, default=0)
    rx_bytes = Column(ByteCounter, nullable=False, default=0)
    session_end = Column(DateTime, default=datetime.utcnow)
