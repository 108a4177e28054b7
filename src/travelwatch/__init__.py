# =============================================================================
# TravelWatch - Real-Time Impossible Travel Detection
# =============================================================================
"""
TravelWatch: Real-Time Fraud Signal Engine for Card Transactions.

This package detects pairs of POS/ATM transactions on the same account that
happen at different places within a short event-time window, and emits an
enriched fraud candidate with distance and implied travel speed.

Modules:
    - config: Configuration management
    - ingest: Transaction models and event normalization
    - processor: Window buffer, join engine, enrichment and emitters
"""

__version__ = "1.0.0"
