"""Outbound notification channels: email, SMS and push."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelMetrics,
    FixedWindowRateLimiter,
    OutboundMessage,
)
from channels.content import render_template, sanitize_html, html_to_text
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter
from channels.push_adapter import PushAdapter
from channels.transports import (
    LoggingTransport, SmtpEmailTransport, HttpSmsTransport, HttpPushTransport,
    build_transport,
)
from channels.sender import NotificationChannelSender

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelMetrics",
    "FixedWindowRateLimiter", "OutboundMessage",
    "render_template", "sanitize_html", "html_to_text",
    "EmailAdapter", "SMSAdapter", "PushAdapter",
    "LoggingTransport", "SmtpEmailTransport", "HttpSmsTransport", "HttpPushTransport",
    "build_transport", "NotificationChannelSender",
]
