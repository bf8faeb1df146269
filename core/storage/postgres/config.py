from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PostgresConfig:
    """Connection configuration.

    `database_url` comes from the DATABASE_URL environment variable.
    Do not log it.
    """

    database_url: str = field(repr=False)

    @classmethod
    def from_env(cls) -> "PostgresConfig":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL is not set")
        return cls(database_url=database_url)
