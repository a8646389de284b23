"""Delivery transports for alerts."""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

ACTION_TEXT = {
    "retweet": "retweeted",
    "reply": "replied to",
    "quote": "quote-tweeted",
}


def build_notification_text(alert: dict) -> str:
    """Client-facing sentence for an alert; LLM copy wins when present."""
    if alert.get("llm_copy") and alert["llm_copy"].strip():
        return alert["llm_copy"]
    name = alert.get("name") or alert.get("username") or "Someone"
    username = alert.get("username") or ""
    handle = f" (@{username})" if username else ""
    action = ACTION_TEXT.get(alert.get("action_type"), "engaged with")
    campaign_name = alert.get("campaign_name") or "your campaign"
    return f'{name}{handle} {action} your post for "{campaign_name}".'


class Transport(ABC):
    """Base interface for alert delivery."""

    @abstractmethod
    def deliver(self, alert: dict) -> Dict[str, bool]:
        """
        Deliver one alert.

        Args:
            alert: Alert message built by `alerts.build_message`

        Returns:
            {"delivered": bool}
        """

    def close(self):
        """Release any connections held by the transport."""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ConsoleTransport(Transport):
    """Logs alerts instead of sending them."""

    def deliver(self, alert: dict) -> Dict[str, bool]:
        logger.info(
            f"[alert {alert.get('alert_id')}] campaign={alert.get('campaign_id')} "
            f"score={alert.get('importance_score')} :: {build_notification_text(alert)}"
        )
        return {"delivered": True}


class SlackWebhookTransport(Transport):
    def __init__(self, webhook_url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        if not webhook_url:
            raise ValueError("Slack webhook URL not configured")
        self.webhook_url = webhook_url
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    def close(self):
        # a client passed in belongs to the caller
        if self._owns_client:
            self.client.close()

    def build_payload(self, alert: dict) -> dict:
        text = build_notification_text(alert)
        action = ACTION_TEXT.get(alert.get("action_type"), "engaged with")
        return {
            "text": text,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": "High-importance Engagement"}},
                {"type": "section", "text": {"type": "mrkdwn", "text": text}},
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*Campaign:*\n{alert.get('campaign_name')}"},
                        {"type": "mrkdwn", "text": f"*Account:*\n@{alert.get('username')} ({alert.get('name')})"},
                        {"type": "mrkdwn", "text": f"*Action:*\n{action} your tweet"},
                        {"type": "mrkdwn", "text": f"*Importance Score:*\n{alert.get('importance_score')}"},
                    ],
                },
            ],
        }

    def deliver(self, alert: dict) -> Dict[str, bool]:
        try:
            resp = self.client.post(self.webhook_url, json=self.build_payload(alert))
        except httpx.HTTPError as e:
            logger.error(f"Slack webhook request failed for alert {alert.get('alert_id')}: {e}")
            return {"delivered": False}
        if resp.is_success:
            return {"delivered": True}
        logger.error(f"Slack API error for alert {alert.get('alert_id')}: {resp.status_code}")
        return {"delivered": False}
