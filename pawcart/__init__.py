"""PawCart pet-supplies storefront backend (Flask + MongoDB)."""

__version__ = "0.1.0"
