"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending core.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. interest_monotonicity.py - Debt and ctoken value never shrink as time passes
2. ctoken_conservation.py - Minting and redeeming never dilute other holders
3. health.py - No committed borrow or withdraw leaves an obligation unhealthy
4. atomicity.py - Failed operations leave the market untouched
5. determinism.py - Replaying operations reproduces state and receipts

These tests use hypothesis for property-based testing.
"""
