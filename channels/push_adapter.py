"""Push Channel Adapter. The address is a device token."""
from __future__ import annotations

from typing import Optional

from channels.base import ChannelAdapter
from channels.content import html_to_text
from models.schemas import Attachment, ChannelType


class PushAdapter(ChannelAdapter):

    channel_type = ChannelType.PUSH

    def validate(self, address: str, content: str, subject: Optional[str] = None,
                 attachments: list[Attachment] = None) -> None:
        token = address or ""
        if len(token) < self.limits.min_push_token_length or any(c.isspace() for c in token):
            self.reject("Invalid device token", field="address")

    def prepare_content(self, content: str) -> str:
        return html_to_text(content)
