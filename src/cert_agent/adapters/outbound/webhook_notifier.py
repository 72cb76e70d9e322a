"""Webhook notification sinks.

SlackWebhookSink posts the rendered text in Slack's incoming-webhook format;
JSONWebhookSink posts the structured event for machine consumers.
"""

from __future__ import annotations

from typing import Optional

import httpx

from cert_agent.domain.entities.events import LifecycleEvent


class SlackWebhookSink:
    """Posts events to a Slack incoming webhook."""

    def __init__(
        self,
        url: str,
        username: str = "cert-agent",
        icon_emoji: str = ":lock:",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self.username = username
        self.icon_emoji = icon_emoji
        self._timeout = timeout
        self._transport = transport

    def payload(self, text: str) -> dict:
        return {"text": text, "username": self.username, "icon_emoji": self.icon_emoji}

    def send(self, event: LifecycleEvent, text: str) -> None:
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            response = client.post(self.url, json=self.payload(text))
            response.raise_for_status()


class JSONWebhookSink:
    """Posts the structured event body to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        service_name: str = "cert-agent",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url
        self.service_name = service_name
        self._timeout = timeout
        self._transport = transport

    def send(self, event: LifecycleEvent, text: str) -> None:
        body = {"service": self.service_name, "text": text, **event.to_dict()}
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            response = client.post(self.url, json=body)
            response.raise_for_status()
