from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from lxml import etree, html as lxml_html

from eventscout.llm import LLMCallError, LLMClient
from eventscout.scorer import ContactSnapshot
from eventscout.utils import extract_json_block

log = logging.getLogger(__name__)

_USER_AGENT = "EventScoutBot/1.0 (+https://eventscout.local)"
_TIMEOUT = 15.0
_MAX_TEXT = 15_000
_MAX_PROMPT_PAGE = 3_000

SENIORITY_LEVELS = (
    "C-Suite", "VP", "Director", "Manager", "IC", "Founder", "Investor", "Board Member", "Other",
)

ENRICHMENT_SYSTEM_PROMPT = """\
You research professional contacts for an event team. Only include \
information you are reasonably confident about. Do not fabricate details. \
If you cannot find reliable information for a field, use null.

Respond with ONLY valid JSON, no markdown.
"""

_RESPONSE_FORMAT = {
    "ai_summary": "A 2-3 sentence professional summary of this person",
    "industry": "Their industry",
    "role_seniority": " | ".join(SENIORITY_LEVELS),
    "company_info": "Brief about their company",
    "notable_facts": ["Fact 1", "Fact 2"],
}


@dataclass
class EnrichmentResult:
    success: bool
    provider: str
    ai_summary: str | None = None
    industry: str | None = None
    role_seniority: str | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)
    cost_cents: int = 0
    error: str | None = None


class EnrichmentProvider(Protocol):
    """Anything that can turn a contact snapshot into enrichment data."""
    name: str

    async def enrich(self, contact: ContactSnapshot) -> EnrichmentResult: ...


# ---------------------------------------------------------------------------
# LLM-backed provider
# ---------------------------------------------------------------------------


class LLMEnrichmentProvider:
    """Synthesizes a profile from what the model knows plus the contact's website."""

    name = "llm"

    def __init__(self, client: LLMClient, fetch_websites: bool = True):
        self.client = client
        self.fetch_websites = fetch_websites

    async def enrich(self, contact: ContactSnapshot) -> EnrichmentResult:
        page_text = None
        if self.fetch_websites and contact.website:
            page_text = await fetch_page_text(contact.website)
        prompt = build_enrichment_prompt(contact, page_text)
        try:
            text = await self.client.complete(ENRICHMENT_SYSTEM_PROMPT, prompt)
        except LLMCallError as exc:
            return EnrichmentResult(success=False, provider=self.name, error=str(exc))
        return EnrichmentResult(success=True, provider=self.name, **parse_enrichment_response(text))


def build_enrichment_prompt(contact: ContactSnapshot, page_text: str | None = None) -> str:
    parts = ["Analyze this professional contact and provide enrichment data.", f"Name: {contact.full_name}"]
    if contact.emails:
        parts.append(f"Email: {contact.emails[0]}")
    if contact.company:
        parts.append(f"Company: {contact.company}")
    if contact.title:
        parts.append(f"Title: {contact.title}")
    if contact.linkedin_url:
        parts.append(f"LinkedIn: {contact.linkedin_url}")
    if page_text:
        parts.append(f"\n--- WEBSITE ({contact.website}) ---")
        parts.append(page_text[:_MAX_PROMPT_PAGE])
    parts.append("")
    parts.append("Respond in this exact JSON format:")
    parts.append(json.dumps(_RESPONSE_FORMAT))
    return "\n".join(parts)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_enrichment_response(text: str) -> dict[str, Any]:
    """Turn a model reply into EnrichmentResult fields.

    A reply without JSON is kept verbatim as the summary.
    """
    block = extract_json_block(text)
    parsed: Any = None
    if block is not None:
        try:
            parsed = json.loads(block)
        except json.JSONDecodeError:
            parsed = None
    if not isinstance(parsed, dict):
        return {"ai_summary": _clean(text)}
    return {
        "ai_summary": _clean(parsed.get("ai_summary")),
        "industry": _clean(parsed.get("industry")),
        "role_seniority": _clean(parsed.get("role_seniority")),
        "raw_data": parsed,
    }


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


async def fetch_page_text(url: str) -> str | None:
    """Fetch *url* and extract readable text; None on any fetch failure."""
    url = url.strip()
    if not url:
        return None
    if not url.startswith(("http://", "https://")):
        url = "https://" + url
    try:
        raw_html = await _fetch_url(url)
    except Exception as exc:
        log.warning("Failed to fetch %s: %s", url, exc)
        return None
    text = _extract_text(raw_html)
    return text or None


async def _fetch_url(url: str) -> str:
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(_TIMEOUT),
        headers={"User-Agent": _USER_AGENT},
    ) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text


def _extract_text(raw_html: str) -> str:
    """Extract readable text from HTML using lxml."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    title = " ".join(tree.xpath("//title//text()")).strip()
    meta = " ".join(tree.xpath("//meta[@name='description']/@content")).strip()
    headings = " ".join(tree.xpath("//h1//text() | //h2//text() | //h3//text()")).strip()
    paragraphs = " ".join(tree.xpath("//p//text()")).strip()

    parts = []
    if title:
        parts.append(f"TITLE: {title}")
    if meta:
        parts.append(f"META: {meta}")
    if headings:
        parts.append(f"HEADINGS: {headings}")
    if paragraphs:
        parts.append(f"CONTENT: {paragraphs}")
    return "\n".join(parts)[:_MAX_TEXT]
