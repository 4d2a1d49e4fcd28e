"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    middleware  — request logging, correlation IDs
    errors      — exception hierarchy & handlers
    health      — health check aggregation
    database    — async SQLAlchemy engine and session factory
"""
