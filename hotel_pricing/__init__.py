"""
Hotel deal pricing and approval engine.

Derives the financial figures of a hotel voucher deal and decides whether the
deal needs human sign-off before it can be finalized.
"""

__version__ = "0.1.0"
