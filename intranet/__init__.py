"""Intranet expense approval service."""
