"""Concierge phases: starter, explorer and executor."""
