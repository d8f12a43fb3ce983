"""Utility billing back-office core: meter readings, bills, payments and reconciliation."""

__version__ = "0.1.0"
