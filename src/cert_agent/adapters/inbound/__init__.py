"""Inbound adapters - health REST API and command line."""

from cert_agent.adapters.inbound.rest_api import create_app

__all__ = ["create_app"]
