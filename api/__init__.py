"""Caseflow HTTP API and background worker."""
