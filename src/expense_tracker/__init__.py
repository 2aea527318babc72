"""Expense tracker family membership service."""
