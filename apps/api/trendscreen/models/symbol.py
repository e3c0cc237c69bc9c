from sqlalchemy import Boolean, Column, DateTime, Float, String, func
from trendscreen.database import Base

class Symbol(Base):
    __tablename__ = "symbols"

    symbol = Column(String, primary_key=True, index=True)
    company_name = Column(String, nullable=True)
    sector = Column(String, nullable=True)
    industry = Column(String, nullable=True)
    market_cap = Column(Float, nullable=True)
    beta = Column(Float, nullable=True)
    price = Column(Float, nullable=True)
    volume = Column(Float, nullable=True)
    exchange = Column(String, nullable=True)
    exchange_short_name = Column(String, nullable=True)
    country = Column(String, nullable=True)
    is_etf = Column(Boolean, default=False)
    is_fund = Column(Boolean, default=False)
    is_actively_trading = Column(Boolean, default=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
