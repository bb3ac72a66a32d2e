"""
SQLAlchemy ORM Models for PostgreSQL
"""
from sqlalchemy import Column, String, Float, DateTime, Text, Enum as SQLEnum, Integer, Boolean, Index, text
from sqlalchemy.orm import declarative_base
from datetime import datetime
import enum

Base = declarative_base()


class TokenTypeEnum(str, enum.Enum):
    REFRESH = "refresh"
    ACCESS = "access"


class Person(Base):
    """A registered identity holding its own Questrade credential pair"""
    __tablename__ = "persons"

    id = Column(String, primary_key=True)
    person_name = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)

    # Status tracking
    is_active = Column(Boolean, default=True, nullable=False)
    has_valid_token = Column(Boolean, default=False, nullable=False)
    last_token_refresh = Column(DateTime, nullable=True)
    last_token_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, onupdate=datetime.utcnow, nullable=True)

    __table_args__ = (
        Index('ix_persons_name_active', 'person_name', 'is_active'),
    )


class Token(Base):
    """Encrypted refresh/access token. Superseded rows are retired, never updated in place."""
    __tablename__ = "tokens"

    id = Column(String, primary_key=True)
    type = Column(SQLEnum(TokenTypeEnum, values_callable=lambda x: [e.value for e in x]), nullable=False)
    person_name = Column(String, nullable=False, index=True)
    encrypted_token = Column(Text, nullable=False)
    iv = Column(String(64), nullable=False)
    api_server = Column(String, nullable=True)  # Only set on access tokens
    expires_at = Column(DateTime, nullable=False)
    last_used = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Error tracking
    last_error = Column(Text, nullable=True)
    error_count = Column(Integer, default=0, nullable=False)
    last_successful_use = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, onupdate=datetime.utcnow, nullable=True)

    __table_args__ = (
        Index('ix_tokens_person_type_active', 'person_name', 'type', 'is_active'),
        Index('ix_tokens_type_active_expires', 'type', 'is_active', 'expires_at'),
        # At most one active token of each type per person
        Index(
            'uq_tokens_active_person_type',
            'person_name',
            'type',
            unique=True,
            postgresql_where=text('is_active'),
            sqlite_where=text('is_active = 1'),
        ),
    )


class Symbol(Base):
    """Questrade symbol. symbol_id never changes once assigned."""
    __tablename__ = "symbols"

    id = Column(String, primary_key=True)
    symbol = Column(String, unique=True, nullable=False, index=True)
    symbol_id = Column(Integer, unique=True, nullable=True, index=True)
    description = Column(String, nullable=True)

    # Security details
    security_type = Column(String(50), nullable=True)
    exchange = Column(String(50), nullable=True)
    listing_exchange = Column(String(50), nullable=True)
    currency = Column(String(10), nullable=True, default="USD")
    is_tradable = Column(Boolean, default=True, nullable=True)
    is_quotable = Column(Boolean, default=True, nullable=True)
    has_options = Column(Boolean, default=False, nullable=True)

    # Slow-changing market data, refreshed lazily
    prev_day_close_price = Column(Float, default=0.0, nullable=True)
    high_price_52 = Column(Float, default=0.0, nullable=True)
    low_price_52 = Column(Float, default=0.0, nullable=True)
    average_vol_3_months = Column(Float, default=0.0, nullable=True)
    average_vol_20_days = Column(Float, default=0.0, nullable=True)
    outstanding_shares = Column(Float, default=0.0, nullable=True)
    eps = Column(Float, default=0.0, nullable=True)
    pe = Column(Float, default=0.0, nullable=True)
    dividend = Column(Float, default=0.0, nullable=True)
    yield_pct = Column(Float, default=0.0, nullable=True)
    market_cap = Column(Float, default=0.0, nullable=True)
    trade_unit = Column(Float, default=1.0, nullable=True)
    ex_date = Column(DateTime, nullable=True)
    dividend_date = Column(DateTime, nullable=True)
    sector = Column(String(100), nullable=True)
    industry = Column(String(100), nullable=True)
    industry_subgroup = Column(String(100), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_detail_update = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Quote(Base):
    """Latest known quote per ticker, used as a warm fallback"""
    __tablename__ = "quotes"

    id = Column(String, primary_key=True)
    symbol = Column(String, unique=True, nullable=False, index=True)
    symbol_id = Column(Integer, default=0, nullable=False, index=True)

    last_trade_price = Column(Float, default=0.0, nullable=False)
    last_trade_size = Column(Float, default=0.0, nullable=False)
    last_trade_tick = Column(String(20), nullable=True)
    last_trade_time = Column(DateTime, nullable=True)
    bid_price = Column(Float, default=0.0, nullable=False)
    bid_size = Column(Float, default=0.0, nullable=False)
    ask_price = Column(Float, default=0.0, nullable=False)
    ask_size = Column(Float, default=0.0, nullable=False)
    open_price = Column(Float, default=0.0, nullable=False)
    high_price = Column(Float, default=0.0, nullable=False)
    low_price = Column(Float, default=0.0, nullable=False)
    close_price = Column(Float, default=0.0, nullable=False)
    previous_close_price = Column(Float, default=0.0, nullable=False)
    day_change = Column(Float, default=0.0, nullable=False)
    day_change_percent = Column(Float, default=0.0, nullable=False)
    volume = Column(Float, default=0.0, nullable=False)
    average_volume = Column(Float, default=0.0, nullable=False)
    vwap = Column(Float, default=0.0, nullable=False)
    week52_high = Column(Float, default=0.0, nullable=False)
    week52_low = Column(Float, default=0.0, nullable=False)
    market_cap = Column(Float, default=0.0, nullable=False)
    eps = Column(Float, default=0.0, nullable=False)
    pe = Column(Float, default=0.0, nullable=False)
    dividend = Column(Float, default=0.0, nullable=False)
    yield_pct = Column(Float, default=0.0, nullable=False)

    exchange = Column(String(50), nullable=True)
    currency = Column(String(10), nullable=True)
    is_halted = Column(Boolean, default=False, nullable=False)
    delay = Column(Float, default=0.0, nullable=False)
    is_real_time = Column(Boolean, default=False, nullable=False)

    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
