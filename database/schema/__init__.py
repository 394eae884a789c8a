"""Versioned schema definitions (vN.py)."""
