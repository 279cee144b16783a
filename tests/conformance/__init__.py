"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending core.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. atomicity.py - A rejected operation leaves no trace
2. idempotency.py - Repeating an accrual at the same instant changes nothing
3. determinism.py - Identical inputs produce identical state and logs
4. temporal.py - Indices, rates and timestamps only move forward

These tests use hypothesis for property-based testing.
"""
