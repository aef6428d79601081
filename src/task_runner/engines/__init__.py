from .protocol import CronCallback, CronEngine, CronJob
from .asyncio_cron import AsyncioCronEngine, AsyncioCronJob

__all__ = ["CronCallback", "CronEngine", "CronJob", "AsyncioCronEngine", "AsyncioCronJob"]
