"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the confidential ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. atomicity.py - Failed operations change nothing
2. conservation.py - Balances move only by deposits, withdrawals and settlement
3. single_position.py - At most one active position per account
4. concurrency.py - Per-account serialization, no lost updates
5. determinism.py - Seeded settlement is reproducible

These tests use hypothesis for property-based testing.
"""
