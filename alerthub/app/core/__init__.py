"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty console logging
    errors          — exception hierarchy & handlers
    middleware      — request logging and correlation IDs
    database        — async SQLAlchemy engine & session factory
    cache           — Redis snapshot cache for the read path
    security        — bearer token → authorisation claim
    health          — health check aggregation
"""
