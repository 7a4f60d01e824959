"""Corpusmap database layer."""

from corpusmap.db.connection import Database
from corpusmap.db.migrations import MIGRATIONS, run_migrations
from corpusmap.db.repository import Repository
from corpusmap.db.schema import initialize
from corpusmap.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
