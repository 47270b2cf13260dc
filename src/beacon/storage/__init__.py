# src/beacon/storage/__init__.py
"""
Content pinning for files that accompany ledger submissions.

Uploads are spooled to a private temp file by the HTTP layer, pinned once,
and removed on every exit path.
"""
