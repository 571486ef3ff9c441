"""Daily Alchemy combination engine."""
