"""
fairalloc - Verifiable Fair-Allocation Engine

Allocates a limited set of slots (event tickets) among registered entries:
- Ledger-derived entropy with freshness gating
- Hash-based verifiable randomness with per-draw proofs
- Commit-reveal registration against front-running
- Pluggable allocation strategies and fairness scoring
"""

__version__ = "0.1.0"
