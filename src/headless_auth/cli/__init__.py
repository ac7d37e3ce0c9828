"""Operator CLI for headless-auth."""
