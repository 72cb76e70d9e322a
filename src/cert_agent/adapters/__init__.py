"""Adapters for the certificate agent."""
