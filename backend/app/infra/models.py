"""Imports every ORM module so relationships declared by class name resolve.

``app.infra.db`` imports this right after creating ``Base``; Alembic and the
test suite therefore always see the full billing schema on ``Base.metadata``.
"""

from app.domain.saas import db_models as saas_db_models  # noqa: F401
from app.domain.billing import db_models as billing_db_models  # noqa: F401
