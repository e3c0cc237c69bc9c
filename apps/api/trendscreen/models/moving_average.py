from sqlalchemy import Column, String, Date, Float, ForeignKey, PrimaryKeyConstraint
from trendscreen.database import Base

class DailyMovingAverage(Base):
    __tablename__ = "daily_ma"

    symbol = Column(String, ForeignKey("symbols.symbol"), nullable=False)
    date = Column(Date, nullable=False, index=True)

    ma20 = Column(Float, nullable=True)
    ma50 = Column(Float, nullable=True)
    ma100 = Column(Float, nullable=True)
    ma200 = Column(Float, nullable=True)
    vol_ma30 = Column(Float, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('symbol', 'date'),
    )
