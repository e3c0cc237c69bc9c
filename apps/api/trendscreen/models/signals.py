from sqlalchemy import Boolean, Column, Date, Float, ForeignKey, PrimaryKeyConstraint, String
from trendscreen.database import Base

class BreakoutSignal(Base):
    __tablename__ = "daily_breakout_signals"

    symbol = Column(String, ForeignKey("symbols.symbol"), nullable=False)
    date = Column(Date, nullable=False)

    is_confirmed_breakout = Column(Boolean, nullable=False, default=False)
    breakout_percent = Column(Float, nullable=True)
    volume_ratio = Column(Float, nullable=True)
    is_perfect_retest = Column(Boolean, nullable=False, default=False)
    ma20_distance_percent = Column(Float, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('symbol', 'date'),
    )

class NoiseSignal(Base):
    __tablename__ = "daily_noise_signals"

    symbol = Column(String, ForeignKey("symbols.symbol"), nullable=False)
    date = Column(Date, nullable=False)

    avg_dollar_volume_20d = Column(Float, nullable=True)
    avg_volume_20d = Column(Float, nullable=True)
    atr14 = Column(Float, nullable=True)
    atr14_percent = Column(Float, nullable=True)
    bb_width_current = Column(Float, nullable=True)
    bb_width_avg_60d = Column(Float, nullable=True)
    is_vcp = Column(Boolean, nullable=False, default=False)
    body_ratio = Column(Float, nullable=True)
    ma20_ma50_distance_percent = Column(Float, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint('symbol', 'date'),
    )
