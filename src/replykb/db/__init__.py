"""replykb database layer."""

from replykb.db.connection import Database
from replykb.db.migrations import MIGRATIONS, run_migrations
from replykb.db.repository import Repository
from replykb.db.schema import initialize
from replykb.db.vectors import build_vector_index, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "build_vector_index",
    "model_to_slug",
    "vec_table_name",
]
