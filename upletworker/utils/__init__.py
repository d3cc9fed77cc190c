"""Utility helpers: errors, classification, archives."""
