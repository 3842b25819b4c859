from .users import User
from .series import NumberSeries, SeriesUserCounter
from .receipts import IssuedNumber

__all__ = [
    'User',
    'NumberSeries', 'SeriesUserCounter',
    'IssuedNumber',
]
