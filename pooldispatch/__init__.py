"""
Pool Dispatch package.
Job lifecycle, same-day route optimization and ETAs for pool service carers.
"""

__version__ = "0.1.0"

from .service import PoolDispatchService
from .api import app

__all__ = [
    "PoolDispatchService",
    "app"
]
