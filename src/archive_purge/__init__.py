"""Monthly archive-and-purge of PostgreSQL tables to S3-compatible storage."""

__version__ = "0.1.0"

__all__ = ["__version__"]
