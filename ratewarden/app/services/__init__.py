"""Admission-control services: identity, tiers and rate limiting."""
