"""Multi-tenant authorization and context isolation."""

__version__ = "0.1.0"
