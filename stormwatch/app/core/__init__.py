"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    errors          — exception hierarchy & handlers
    database        — async SQLAlchemy engine / session factory
    health          — health check aggregation
    middleware      — request logging for the HTTP surface
"""
