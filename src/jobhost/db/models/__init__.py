"""SQLAlchemy models for jobhost.

Importing this package registers every table with Base.metadata, which
Alembic uses for autogenerate.
"""

from jobhost.db.models.base import Base
from jobhost.db.models.jobs import Job

__all__ = [
    "Base",
    "Job",
]
