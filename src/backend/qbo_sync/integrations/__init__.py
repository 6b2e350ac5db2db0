"""Integration adapters for external systems (QBO OAuth, QBO API, token storage).

Keep these modules small and testable:
- No FastAPI request/response objects
- Pure IO + parsing helpers
"""
