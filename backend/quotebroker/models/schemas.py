from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
from enum import Enum


class QuoteStatusEnum(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    NOT_FOUND = "not_found"


# ---- tokens ------------------------------------------------------------

class SetupPersonRequest(BaseModel):
    person_name: str = Field(..., min_length=1, max_length=100)
    refresh_token: str = Field(..., min_length=1)
    display_name: Optional[str] = None


class SetupPersonResponse(BaseModel):
    success: bool
    person_name: str
    api_server: str
    expires_at: datetime


class AccessTokenResponse(BaseModel):
    access_token: str
    api_server: str
    person_name: str
    expires_at: datetime


class RefreshTokenResponse(BaseModel):
    success: bool
    person_name: str
    api_server: str
    expires_at: datetime


class TokenRecordStatus(BaseModel):
    exists: bool
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    error_count: int = 0
    last_error: Optional[str] = None
    api_server: Optional[str] = None

    class Config:
        from_attributes = True


class TokenStatusResponse(BaseModel):
    person_name: str
    refresh_token: TokenRecordStatus
    access_token: TokenRecordStatus
    is_healthy: bool

    class Config:
        from_attributes = True


class ConnectionTestResponse(BaseModel):
    success: bool
    person_name: str
    api_server: str
    server_time: Optional[str] = None

    class Config:
        from_attributes = True


class PersonResponse(BaseModel):
    person_name: str
    display_name: Optional[str] = None
    is_active: bool
    has_valid_token: bool
    last_token_refresh: Optional[datetime] = None
    last_token_error: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# ---- symbols -----------------------------------------------------------

class SymbolLookupRequest(BaseModel):
    symbols: List[str] = Field(..., min_length=1)
    person_name: Optional[str] = None


class SymbolLookupEntry(BaseModel):
    symbol: str
    symbol_id: Optional[int] = None
    description: Optional[str] = None
    currency: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class SymbolLookupResponse(BaseModel):
    success: bool = True
    data: Dict[str, SymbolLookupEntry]


class SymbolRecord(BaseModel):
    symbol: str
    symbol_id: Optional[int] = None
    description: Optional[str] = None
    security_type: Optional[str] = None
    exchange: Optional[str] = None
    listing_exchange: Optional[str] = None
    currency: Optional[str] = None
    is_tradable: Optional[bool] = None
    is_quotable: Optional[bool] = None
    has_options: Optional[bool] = None
    prev_day_close_price: Optional[float] = None
    high_price_52: Optional[float] = None
    low_price_52: Optional[float] = None
    average_vol_3_months: Optional[float] = None
    average_vol_20_days: Optional[float] = None
    outstanding_shares: Optional[float] = None
    eps: Optional[float] = None
    pe: Optional[float] = None
    dividend: Optional[float] = None
    yield_pct: Optional[float] = None
    market_cap: Optional[float] = None
    ex_date: Optional[datetime] = None
    dividend_date: Optional[datetime] = None
    sector: Optional[str] = None
    industry: Optional[str] = None
    industry_subgroup: Optional[str] = None
    last_detail_update: Optional[datetime] = None

    class Config:
        from_attributes = True


class StreamPortResponse(BaseModel):
    person_name: str
    stream_port: int


# ---- quotes ------------------------------------------------------------

class QuoteSnapshot(BaseModel):
    symbol: str
    symbol_id: int = 0
    last_trade_price: float = 0.0
    last_trade_size: float = 0.0
    last_trade_tick: Optional[str] = None
    last_trade_time: Optional[datetime] = None
    bid_price: float = 0.0
    bid_size: float = 0.0
    ask_price: float = 0.0
    ask_size: float = 0.0
    open_price: float = 0.0
    high_price: float = 0.0
    low_price: float = 0.0
    close_price: float = 0.0
    previous_close_price: float = 0.0
    day_change: float = 0.0
    day_change_percent: float = 0.0
    volume: float = 0.0
    average_volume: float = 0.0
    vwap: float = 0.0
    week52_high: float = 0.0
    week52_low: float = 0.0
    market_cap: float = 0.0
    eps: float = 0.0
    pe: float = 0.0
    dividend: float = 0.0
    yield_pct: float = 0.0
    exchange: Optional[str] = None
    currency: Optional[str] = None
    is_halted: bool = False
    delay: float = 0.0
    is_real_time: bool = False
    last_updated: Optional[datetime] = None

    class Config:
        from_attributes = True


class QuoteResponse(BaseModel):
    symbol: str
    status: QuoteStatusEnum
    stale: bool = False
    quote: Optional[QuoteSnapshot] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class MultipleQuotesResponse(BaseModel):
    success: bool = True
    data: Dict[str, QuoteResponse]
