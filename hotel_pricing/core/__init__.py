"""
Core modules for the hotel pricing engine.

This package contains input normalization, currency conversion, the
financial derivation engine, the approval rules and the override ledger.
"""
