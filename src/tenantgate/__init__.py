"""Tenant access and subscription enforcement for a multi-tenant commerce back end."""

__version__ = "0.4.0"
