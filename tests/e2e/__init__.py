"""
End-to-End Tests for refcheck.

These tests run against a real PostgreSQL:
- sandbox schemas are created and dropped for real
- verdicts come from actual query results

Run with: E2E_TEST=1 REFCHECK_TEST_DSN=postgresql://... pytest tests/e2e/ -v
"""
