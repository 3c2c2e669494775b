"""ORM models.

Importing this package registers every table on Base.metadata, which
Alembic's env.py and the test fixtures rely on.
"""

from farmgrid.models.user import User
from farmgrid.models.farm import Farm

__all__ = ["User", "Farm"]
