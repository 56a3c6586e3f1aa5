"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty logging, session log context
    errors          — exception hierarchy & handlers
    middleware      — request correlation & access logging
    health          — health check aggregation
"""
