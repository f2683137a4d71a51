"""
Message content helpers: ``{{var}}`` rendering, HTML sanitizing and
HTML-to-text reduction for SMS and push.

Sanitizing goes through nh3 (ammonia), an allowlist cleaner: only known-safe
tags, attributes and URL schemes survive. BeautifulSoup is used for the
plain-text reduction only.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Optional

import nh3
from bs4 import BeautifulSoup

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_NON_TEXT_TAGS = ["script", "style", "template", "noscript", "head", "title"]
_URL_SCHEMES = {"http", "https", "mailto", "tel"}


def render_template(template: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Replace ``{{key}}`` tokens; tokens without a value are left verbatim."""
    if not template:
        return ""
    variables = variables or {}

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def sanitize_html(html: str) -> str:
    """Keep allowlisted markup only; scripts, handlers and script URLs are dropped."""
    if not html:
        return ""
    return nh3.clean(html, url_schemes=_URL_SCHEMES)


def html_to_text(html: str) -> str:
    """Plain text with collapsed whitespace, for channels without markup."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(_NON_TEXT_TAGS):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())
