from sqlalchemy import Column, String, Date, Float, ForeignKey, PrimaryKeyConstraint
from trendscreen.database import Base

class QuarterlyFinancial(Base):
    __tablename__ = "quarterly_financials"

    symbol = Column(String, ForeignKey("symbols.symbol"), nullable=False)
    period_end_date = Column(Date, nullable=False)
    as_of_q = Column(String, nullable=False)  # e.g. "2025Q2"

    revenue = Column(Float, nullable=True)
    net_income = Column(Float, nullable=True)
    operating_income = Column(Float, nullable=True)
    eps_diluted = Column(Float, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('symbol', 'period_end_date'),
    )

class QuarterlyRatio(Base):
    __tablename__ = "quarterly_ratios"

    symbol = Column(String, ForeignKey("symbols.symbol"), nullable=False)
    period_end_date = Column(Date, nullable=False)
    as_of_q = Column(String, nullable=False)

    pe_ratio = Column(Float, nullable=True)
    peg_ratio = Column(Float, nullable=True)
    ps_ratio = Column(Float, nullable=True)
    pb_ratio = Column(Float, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('symbol', 'period_end_date'),
    )

class DailyRatio(Base):
    __tablename__ = "daily_ratios"

    symbol = Column(String, ForeignKey("symbols.symbol"), nullable=False)
    date = Column(Date, nullable=False)

    pe_ratio = Column(Float, nullable=True)
    peg_ratio = Column(Float, nullable=True)
    ps_ratio = Column(Float, nullable=True)
    pb_ratio = Column(Float, nullable=True)
    market_cap = Column(Float, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('symbol', 'date'),
    )
