from .protocol import TaskStorage
from .sqlalchemy import InMemoryStorage, SqlAlchemyStorage

__all__ = ["TaskStorage", "SqlAlchemyStorage", "InMemoryStorage"]
