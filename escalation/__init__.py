"""Ticket escalation service."""
