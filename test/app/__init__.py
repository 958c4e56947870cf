"""
Unit tests for backend/app.

This test package validates the project assignment service including:
- Identifier classification
- Relational and subject stores
- Cache handling and invalidation
- Assignment orchestration
- Route handlers for API endpoints
- Custom exception handling
"""
