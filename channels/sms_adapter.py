"""
SMS Channel Adapter.

SMS bodies are reduced to plain text, then checked against the
single-segment length limit. Over-long messages are rejected, not split.
"""
from __future__ import annotations

import re
from typing import Optional

from channels.base import ChannelAdapter
from channels.content import html_to_text
from models.schemas import Attachment, ChannelType

PHONE_PATTERN = re.compile(r"^\+?[\d\s-]+$")


class SMSAdapter(ChannelAdapter):

    channel_type = ChannelType.SMS

    def validate(self, address: str, content: str, subject: Optional[str] = None,
                 attachments: list[Attachment] = None) -> None:
        if not address or not PHONE_PATTERN.match(address):
            self.reject("Invalid phone number", field="address")
        if len(content) > self.limits.max_sms_length:
            self.reject(f"SMS message too long, max {self.limits.max_sms_length} characters",
                        field="content")

    def prepare_content(self, content: str) -> str:
        return html_to_text(content)
