"""
Backend package for the parcel intake / repackaging service.

This package provides a FastAPI application with storage, database and
queue abstractions so uploads, parcel records and OCR jobs can run against
cloud backends in production and in-memory doubles in development.
"""
