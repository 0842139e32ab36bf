"""Risk & performance analytics engine.

Turns price and holdings history into risk metrics, rolling betas,
market-regime classifications and cash-flow-aware performance figures.
"""

__version__ = "0.1.0"
