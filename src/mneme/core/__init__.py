"""Core modules for Mneme.

CRITICAL: Nothing in this package may depend on a UI toolkit.
"""
