from .symbol import Symbol
from .price import PriceDaily
from .moving_average import DailyMovingAverage
from .signals import BreakoutSignal, NoiseSignal
from .fundamentals import QuarterlyFinancial, QuarterlyRatio, DailyRatio
