"""Incident escalation."""
