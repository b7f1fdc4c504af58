"""
Tests for payments app.

This package contains test modules for:
- test_models.py: WebhookEvent model tests
- test_verification.py: PaymentVerificationService tests
- test_locks.py / test_optimistic_locking.py: locking helpers
- test_views.py: Balance endpoint tests

Usage:
    pytest payments/tests/
    pytest payments/tests/test_verification.py
"""
