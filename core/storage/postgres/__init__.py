"""PostgreSQL storage.

Notes
- Connection URLs are never logged (they may contain credentials).
- Schema lives in db/schema.sql and is applied by `python -m db.init_db`.
"""

from .config import PostgresConfig
from .stores import PostgresStores
