"""Diagnostic logging for guardian reviews."""
