"""
strategylab - Strategy Backtesting & Analytics Engine
"""

__version__ = "1.0.0"

# Calendar
TRADING_DAYS_PER_YEAR = 252
DAYS_PER_YEAR = 365.25

# Defaults shared across modules
DEFAULT_RISK_FREE_RATE = 4.5  # annual, percent
LARGE_SPACE_THRESHOLD = 10_000
RECENT_BARS_WINDOW = 50
