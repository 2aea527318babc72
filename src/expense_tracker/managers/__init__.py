"""Managers for family membership, cleanup, logging and rate limiting."""
