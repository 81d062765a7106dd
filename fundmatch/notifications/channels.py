from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional
import logging

import boto3
import requests

from fundmatch.config import PipelineConfig, Settings, get_pipeline_config, get_settings
from fundmatch.db.models import NotificationSetting
from fundmatch.errors import NotificationError
from fundmatch.notifications.digest import Digest

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_S = 10
DISCORD_COLOR = 0x3B82F6


class EmailChannel:
    """Daily digest over Amazon SES v2."""

    name = "email"

    def __init__(self, from_email: str, aws_region: str, app_base_url: str = "",
                 top_n: int = 10, client=None):
        if not from_email:
            raise NotificationError("SES sender is not configured. Set SES_FROM_EMAIL.")
        self.from_email = from_email
        self.app_base_url = app_base_url
        self.top_n = top_n
        self.client = client or boto3.Session(region_name=aws_region).client("sesv2")

    def enabled_for(self, setting: NotificationSetting, digest: Digest) -> bool:
        return bool(setting.email_enabled and digest.email)

    def send(self, setting: NotificationSetting, digest: Digest) -> Dict[str, str]:
        subject = f"[FundMatch] 오늘의 매칭 결과 {digest.total_count}건"
        text_body = digest.render(self.top_n)
        if self.app_base_url:
            text_body += f"\n\n전체 결과 보기: {self.app_base_url}/matching"

        out = self.client.send_email(
            FromEmailAddress=self.from_email,
            Destination={"ToAddresses": [digest.email]},
            Content={
                "Simple": {
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": {"Text": {"Data": text_body, "Charset": "UTF-8"}},
                }
            },
        )
        return {"message_id": str(out.get("MessageId") or "")}


class WebhookChannel:
    """Base for chat channels that take one JSON POST per digest."""

    name = "webhook"

    def __init__(self, top_n: int = 5, http_post: Callable[..., requests.Response] = requests.post):
        self.top_n = top_n
        self.http_post = http_post

    def webhook_url(self, setting: NotificationSetting) -> Optional[str]:
        raise NotImplementedError

    def payload(self, digest: Digest) -> Dict[str, Any]:
        raise NotImplementedError

    def enabled_for(self, setting: NotificationSetting, digest: Digest) -> bool:
        return bool(self.webhook_url(setting))

    def send(self, setting: NotificationSetting, digest: Digest) -> None:
        try:
            resp = self.http_post(self.webhook_url(setting), json=self.payload(digest), timeout=WEBHOOK_TIMEOUT_S)
        except requests.RequestException as e:
            raise NotificationError(f"{self.name} webhook unreachable: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise NotificationError(f"{self.name} webhook failed: {resp.status_code}")


class DiscordChannel(WebhookChannel):
    name = "discord"

    def webhook_url(self, setting: NotificationSetting) -> Optional[str]:
        return setting.discord_webhook_url if setting.discord_enabled else None

    def payload(self, digest: Digest) -> Dict[str, Any]:
        fields = [
            {
                "name": f"{i}. {item.name}",
                "value": f"{item.organization} | {item.total_score}점 | "
                         f"마감 {item.deadline.isoformat() if item.deadline else '상시'}",
                "inline": False,
            }
            for i, item in enumerate(digest.top(self.top_n), start=1)
        ]
        return {
            "embeds": [{
                "title": f"오늘의 매칭 결과 {digest.total_count}건",
                "color": DISCORD_COLOR,
                "fields": fields,
            }]
        }


class SlackChannel(WebhookChannel):
    name = "slack"

    def webhook_url(self, setting: NotificationSetting) -> Optional[str]:
        return setting.slack_webhook_url if setting.slack_enabled else None

    def payload(self, digest: Digest) -> Dict[str, Any]:
        blocks: List[Dict[str, Any]] = [
            {"type": "header", "text": {"type": "plain_text", "text": f"오늘의 매칭 결과 {digest.total_count}건"}},
        ]
        for i, item in enumerate(digest.top(self.top_n), start=1):
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*{item.line(i)}*"}})
        return {"text": f"오늘의 매칭 결과 {digest.total_count}건", "blocks": blocks}


def default_channels(settings: Optional[Settings] = None, config: Optional[PipelineConfig] = None) -> list:
    settings = settings or get_settings()
    config = config or get_pipeline_config()
    channels: list = []
    if settings.ses_from_email:
        channels.append(EmailChannel(settings.ses_from_email, settings.aws_region,
                                     settings.app_base_url, top_n=config.digest_email_top_n))
    else:
        logger.warning("SES_FROM_EMAIL not set; email digests are disabled")
    channels.append(DiscordChannel(top_n=config.digest_chat_top_n))
    channels.append(SlackChannel(top_n=config.digest_chat_top_n))
    return channels
