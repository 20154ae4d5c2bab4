"""Store-coordinated task sessions and quota-aware wave scheduling."""

__version__ = "0.1.0"
