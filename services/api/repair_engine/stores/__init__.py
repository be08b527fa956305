"""Data stores for persistence, caching and locks.

Stores handle:
- PostgreSQL: DB session management, ORM base, connection pooling
- Redis: config snapshot cache, distributed locks

No business/scoring logic in stores - that belongs in services.
"""
