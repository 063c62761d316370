"""Loopback HTTP API for the account-switcher shell."""
