from sqlalchemy import Column, String, Date, Float, Integer, ForeignKey, PrimaryKeyConstraint
from trendscreen.database import Base

class PriceDaily(Base):
    __tablename__ = "daily_prices"

    symbol = Column(String, ForeignKey("symbols.symbol"), nullable=False)
    date = Column(Date, nullable=False, index=True)
    open = Column(Float, nullable=True)
    high = Column(Float, nullable=True)
    low = Column(Float, nullable=True)
    close = Column(Float, nullable=True)
    adj_close = Column(Float, nullable=True)
    volume = Column(Float, nullable=True)
    # Written only by the relative-strength ranker
    rs_score = Column(Integer, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('symbol', 'date'),
    )
