"""Shared data structures, errors and logging setup."""
