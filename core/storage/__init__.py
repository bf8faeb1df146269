"""Storage implementations of the persistence interfaces.

- `InMemoryStores`: process-local, for tests and local development
- `PostgresStores`: PostgreSQL via SQLAlchemy
"""

from .memory_stores import InMemoryStores
from .postgres import PostgresConfig, PostgresStores
