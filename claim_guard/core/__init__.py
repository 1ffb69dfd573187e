"""
Core modules for Claim Guard.

This package contains the quota ledger, model selection, fallback
orchestration, error classification, response validation and audit logging.
"""
