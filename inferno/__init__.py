"""
INFERNO - durable buy-back-and-burn pipeline for a pump.fun token.

Two operation classes run on independent schedules:
- buyback: collect creator fees, buy the token, burn it
- milestone: burn a fixed amount when market cap crosses a threshold

Every step is checkpointed in a SQLite ledger so a crash at any point
is recovered on restart without ever burning twice.
"""

__version__ = "1.0.0"
