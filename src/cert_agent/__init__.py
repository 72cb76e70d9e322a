"""
cert-agent - Short-lived certificate renewal agent

Keeps certificates issued by an internal Step CA valid on behalf of
co-located services: decides when to renew, performs the issuance exchange,
swaps certificate/key material atomically on disk, reloads the consuming
service and rolls back when any step fails.
"""

__version__ = "0.1.0"
__author__ = "Systems Engineering Portfolio"
