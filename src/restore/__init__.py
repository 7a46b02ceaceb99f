"""Restore utility for loading archived batches from S3 back into PostgreSQL."""

from restore.main import main
from restore.restore_engine import RestoreEngine

__all__ = ["main", "RestoreEngine"]
