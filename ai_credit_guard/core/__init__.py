"""
Core modules for AI Credit Guard.

This package contains the credit ledger, credit calculation, generation
orchestration, proration and trial handling.
"""
