"""Configuration package for KyverInvoices."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
