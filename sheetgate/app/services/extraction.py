"""Structured data extraction from page content.

The extractor turns page content (Markdown or cleaned HTML) plus a natural
language instruction into a list of records. The model-backed
implementation is deployed separately; without one the scrape endpoint
answers 503.

``strip_urls`` removes links and URLs from the content before it reaches
the extractor.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sheetgate.app.exceptions import ServiceNotConfiguredError

_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]+\)")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_ORPHAN_TARGET = re.compile(r"\]\([^)]+\)")
_REFERENCE_DEFINITION = re.compile(r"^\s*\[[^\]]+\]:\s+\S+.*$", re.MULTILINE)
_AUTOLINK = re.compile(r"<https?://[^>]+>")
_PLAIN_URL = re.compile(r"https?://[^\s)]+")
# At least two path segments, so fractions like 1/2 survive
_RELATIVE_PATH = re.compile(
    r"(?:^|\s)/[a-zA-Z][a-zA-Z0-9_\-]*/[a-zA-Z0-9_\-/.]+(?:\?[^\s)]*)?", re.MULTILINE
)
_EMPTY_TARGET = re.compile(r"\]\(\s*\)")
_BLANK_LINES = re.compile(r"\n\s*\n\s*\n")


def strip_urls(content: Optional[str]) -> str:
    """Remove images, link targets and URLs, keeping link text."""
    if not content:
        return ""

    cleaned = _IMAGE.sub("", content)
    cleaned = _LINK.sub(r"\1", cleaned)
    cleaned = _ORPHAN_TARGET.sub("", cleaned)
    cleaned = _REFERENCE_DEFINITION.sub("", cleaned)
    cleaned = _AUTOLINK.sub("", cleaned)
    cleaned = _PLAIN_URL.sub("", cleaned)
    cleaned = _RELATIVE_PATH.sub("", cleaned)
    cleaned = _EMPTY_TARGET.sub("", cleaned)
    cleaned = _BLANK_LINES.sub("\n\n", cleaned)
    return cleaned.strip()


class Extractor(ABC):
    """Capability interface over the extraction model."""

    @abstractmethod
    async def extract(
        self,
        content: str,
        instruction: str,
        model: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return the records described by ``instruction``.

        Raises:
            UpstreamError: The model provider failed.
        """


class UnconfiguredExtractor(Extractor):
    """Placeholder used when no extraction backend is wired in."""

    async def extract(
        self,
        content: str,
        instruction: str,
        model: Optional[str] = None,
        max_items: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise ServiceNotConfiguredError("Data extraction is not configured")
