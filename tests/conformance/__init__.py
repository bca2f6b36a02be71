"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the protection pool engine.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. premium_laws.py - Shape of the risk factor, premium and accrual curves
2. conservation.py - Underlying and share accounting
3. atomicity.py - All-or-nothing pool operations
4. idempotency.py - Repeated refreshes, accruals, assessments and claims
5. determinism.py - Reproducible behavior
6. temporal.py - Time ordering, loan status lifecycle and accrual paths

These tests use hypothesis for property-based testing.
"""
