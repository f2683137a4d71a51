"""
Email Channel Adapter.

Validates the address and attachment budget, and sanitizes HTML
bodies before they reach the SMTP transport.
"""
from __future__ import annotations

import re
from typing import Optional

from channels.base import ChannelAdapter
from channels.content import sanitize_html
from models.schemas import Attachment, ChannelType

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class EmailAdapter(ChannelAdapter):

    channel_type = ChannelType.EMAIL

    def validate(self, address: str, content: str, subject: Optional[str] = None,
                 attachments: list[Attachment] = None) -> None:
        if not address or not EMAIL_PATTERN.match(address):
            self.reject("Invalid email address", field="address")

        total = sum(a.size_bytes for a in attachments or [])
        if total > self.limits.max_attachment_bytes:
            self.reject(
                f"Attachments total size exceeds limit of {self.limits.max_attachment_bytes} bytes",
                field="attachments",
            )

    def prepare_content(self, content: str) -> str:
        return sanitize_html(content)
