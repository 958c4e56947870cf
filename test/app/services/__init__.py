"""
Unit tests for backend/app services.

This package contains tests for:
- identifier_service: Relational vs ephemeral ID classification
- relational_store / subject_store: Per-store reads and writes
- cache_service: Cached listings and invalidation
- assignment_service: Cross-store orchestration
"""
