"""Phorest -> GHL sync engine -- staging, identity mapping, workers, repair, audit and retry.

Provides the SQLAlchemy models and Pydantic schemas for staged records,
mappings, run logs, the failure ledger and audit results, plus the services
assembled by SyncContainer (see container.py).
"""
