"""Gunicorn preload entry point: `gunicorn pre_import:app`.

Binds the database and generates the PonyORM mapping in the master process
before the Flask app is imported, so forked workers inherit ready mappings.
Tables are not created here; run scripts/create_tables.py for that. The
blob store directory is created up front so the first upload in a worker
does not race another worker creating it.
"""
from models import init_db
from storage import get_store

init_db(create_tables=False)
get_store()

from backend import app  # noqa: E402,F401

__all__ = ['app']
