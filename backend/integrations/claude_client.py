"""
Claude AI Client: Anthropic Messages API over httpx.

Used as the text-completion backend of the workflow plan generator:
- Connection pooling via a shared httpx.AsyncClient (injectable for tests)
- **Smart JSON parsing**: extracts clean JSON from mixed text/markdown responses
- Token usage tracking
"""

import json
import re
from typing import Any, Dict, List, Optional

import httpx
import structlog

from app.config import Settings, get_settings

logger = structlog.get_logger(__name__)


# ─── Smart JSON Extractor ──────────────────────────────────────
#
# Claude sometimes wraps JSON in explanation text or markdown fences.
# This module extracts clean JSON regardless of wrapper format.

def extract_json(text: str) -> Any:
    """Extract clean JSON from a Claude response that may contain markdown or prose.

    Tries multiple strategies in order:
    1. Direct JSON parse (fastest path)
    2. Strip markdown code fences (```json ... ```)
    3. Find first { ... } or [ ... ] block via bracket balancing

    Returns parsed JSON object or raises ValueError.
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    clean = text.strip()

    # Strategy 1: Direct parse
    try:
        return json.loads(clean)
    except json.JSONDecodeError:
        pass

    # Strategy 2: Strip markdown code fences
    fence_pattern = re.compile(r'```(?:json|JSON)?\s*\n?(.*?)```', re.DOTALL)
    match = fence_pattern.search(clean)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    # Strategy 3: Bracket-balanced extraction
    for opener, closer in [('{', '}'), ('[', ']')]:
        start = clean.find(opener)
        if start == -1:
            continue
        depth = 0
        in_string = False
        escape_next = False
        for i in range(start, len(clean)):
            c = clean[i]
            if escape_next:
                escape_next = False
                continue
            if c == '\\':
                escape_next = True
                continue
            if c == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if c == opener:
                depth += 1
            elif c == closer:
                depth -= 1
                if depth == 0:
                    candidate = clean[start:i + 1]
                    try:
                        return json.loads(candidate)
                    except json.JSONDecodeError:
                        break

    raise ValueError(f"Could not extract JSON from response: {clean[:200]}")


class TokenUsageTracker:
    """Accumulates token usage reported by the API."""

    def __init__(self):
        self.input_tokens = 0
        self.output_tokens = 0
        self.requests = 0

    def record(self, usage: Dict[str, Any]) -> None:
        self.requests += 1
        self.input_tokens += usage.get("input_tokens", 0)
        self.output_tokens += usage.get("output_tokens", 0)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


class ClaudeClient:
    """
    Minimal async client for the Anthropic Messages API.

    Pass ``http_client`` to reuse a pool or to plug in an
    ``httpx.MockTransport`` in tests.
    """

    API_BASE = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = http_client
        self._owns_client = http_client is None
        self.usage = TokenUsageTracker()

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.ANTHROPIC_API_KEY) or not self._owns_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            if not self.settings.ANTHROPIC_API_KEY:
                raise ConnectionError("Claude API key not configured")
            self._client = httpx.AsyncClient(
                base_url=self.API_BASE,
                headers={
                    "x-api-key": self.settings.ANTHROPIC_API_KEY,
                    "anthropic-version": self.API_VERSION,
                    "content-type": "application/json",
                },
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=float(self.settings.CLAUDE_TIMEOUT),
                    write=30.0,
                    pool=10.0,
                ),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def close(self) -> None:
        """Gracefully close connections."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _make_request(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.settings.CLAUDE_MODEL,
            "max_tokens": max_tokens or self.settings.CLAUDE_MAX_TOKENS,
            "temperature": self.settings.CLAUDE_TEMPERATURE if temperature is None else temperature,
            "messages": messages,
        }
        if system:
            payload["system"] = system

        response = await self._get_client().post("/messages", json=payload)
        if response.status_code != 200:
            logger.error("Claude API error", status_code=response.status_code,
                         body=response.text[:500])
            raise RuntimeError(f"Claude API error {response.status_code}: {response.text[:200]}")

        data = response.json()
        self.usage.record(data.get("usage", {}))
        return data

    async def ask(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a message and get a text response."""
        response = await self._make_request(
            messages=[{"role": "user", "content": prompt}],
            system=system,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        text = ""
        for block in response.get("content", []):
            if block.get("type") == "text":
                text += block.get("text", "")
        if not text:
            raise ValueError("No response from AI")
        return text
