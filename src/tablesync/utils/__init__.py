"""Utility modules for tablesync."""
