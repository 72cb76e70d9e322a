"""Ports (interfaces) for the certificate agent."""
