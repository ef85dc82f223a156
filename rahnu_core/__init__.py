"""
Ar-Rahnu Core

Back-office core for an Islamic gold pawn-broking operation: gold valuation,
pawn loan origination, dual-approval vault custody and a hash-chained audit trail.
All money and weight arithmetic uses Decimal.
"""

__version__ = "1.0.0"
