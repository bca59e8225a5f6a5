"""Solver status API."""
