"""
SPARK — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from spark.models.document import DocumentRow

__all__ = [
    "DocumentRow",
]
