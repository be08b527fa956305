"""Business logic services.

Services contain all business logic and are called by routes and scripts.
Scoring, reward and validation rules are pure functions of their inputs plus
an explicit `EngineConfig`; DB-facing helpers accept an `AsyncSession`.
"""
