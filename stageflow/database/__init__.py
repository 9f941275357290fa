"""
Session storage: repository interface, in-memory and PostgreSQL stores,
and retry helpers for transient database errors.
"""
