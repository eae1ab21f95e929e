"""
Core modules for AI Usage Ledger.

This package contains normalization, pricing, deduplication, change
detection, ingestion, aggregation and statistics queries.
"""
