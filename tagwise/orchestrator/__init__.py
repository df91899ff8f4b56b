"""Orchestration: directive extraction, quota gate, panels and reconciliation."""
