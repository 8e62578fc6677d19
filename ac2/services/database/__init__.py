"""Database package — re-export of the Database class.

``from ac2.services.database import Database`` is the supported import.
"""

from __future__ import annotations

from ac2.services.database.pool import PoolMixin
from ac2.settings import Settings


class Database(PoolMixin):
    """AsyncPG connection pool shared by the code store, credential and connection services."""

    def __init__(self, settings: Settings):
        super().__init__(settings)


__all__ = ["Database"]
