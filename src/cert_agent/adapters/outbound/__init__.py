"""Outbound adapters - filesystem, Step CA, reload command and webhooks."""

from cert_agent.adapters.outbound.authorizers import StaticTokenAuthorizer, StepCLIAuthorizer
from cert_agent.adapters.outbound.file_certificate_store import FileCertificateStore
from cert_agent.adapters.outbound.step_ca_client import StepCAClient
from cert_agent.adapters.outbound.subprocess_reload_executor import SubprocessReloadExecutor
from cert_agent.adapters.outbound.webhook_notifier import JSONWebhookSink, SlackWebhookSink

__all__ = [
    "StaticTokenAuthorizer",
    "StepCLIAuthorizer",
    "FileCertificateStore",
    "StepCAClient",
    "SubprocessReloadExecutor",
    "JSONWebhookSink",
    "SlackWebhookSink",
]
