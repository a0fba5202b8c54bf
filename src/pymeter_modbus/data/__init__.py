"""Packaged register map profiles (JSON)."""
