"""Two-factor authentication core for the ride-hailing backend."""

__version__ = "1.0.0"
