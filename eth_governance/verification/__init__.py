"""Deterministic deployment verification."""
