"""Application layer - composition and run modes."""

from cert_agent.application.agent import CertAgent
from cert_agent.application.scheduler import Scheduler

__all__ = ["CertAgent", "Scheduler"]
