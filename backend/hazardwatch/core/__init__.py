"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty console logging
    errors          — exception hierarchy & FastAPI handlers
    middleware      — request logging + correlation IDs
    health          — health check aggregation
    database        — async SQLAlchemy engine (delivery log table)
    cache           — shared Redis client (rate-limit counters)
"""
