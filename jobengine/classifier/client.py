"""
AI gateway client.

Talks to an OpenAI-compatible chat completions endpoint. Every call sends an
instruction plus one or more image URLs and expects a short answer back:
a single label, a yes/no, a small JSON object, or (for generation) an image.

HTTP failures are translated into the typed service errors so the retrier
can tell a rate limit apart from a payment problem.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import httpx

from jobengine.config import Settings, settings
from jobengine.jobs.errors import (
    MalformedRequest,
    PaymentRequired,
    RateLimited,
    ServerError,
    ServiceTimeout,
    UnknownServiceError,
)

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_WORD = re.compile(r"[a-z]+")


def raise_for_service_status(response: httpx.Response, service: str = "AI gateway") -> None:
    """Map a non-2xx response onto the service error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:200]
    if status == 429:
        raise RateLimited(f"Rate limit exceeded: {detail}", status)
    if status == 402:
        raise PaymentRequired(f"Payment required: {detail}", status)
    if status == 400:
        raise MalformedRequest(f"Malformed request: {detail}", status)
    if status >= 500:
        raise ServerError(f"{service} error {status}: {detail}", status)
    raise UnknownServiceError(f"{service} error {status}: {detail}", status)


class ClassifierClient:
    """
    Image classifier / generator backed by the AI gateway.

    Usage:
        client = ClassifierClient()
        label = await client.ask_label(url, "men, women or unknown?", {"men", "women"})
        await client.close()
    """

    def __init__(
        self,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = config.ai_gateway_url
        self.api_key = config.ai_gateway_key
        self.model = config.classifier_model
        self.generation_model = config.generation_model
        self.timeout = config.classifier_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _complete(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise MalformedRequest("AI_GATEWAY_KEY not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                self.url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TimeoutException as e:
            raise ServiceTimeout(f"AI gateway timeout after {self.timeout}s") from e

        raise_for_service_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise UnknownServiceError(f"AI gateway returned non-JSON body: {e}") from e

    @staticmethod
    def _content(instruction: str, image_urls: Sequence[str]) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [{"type": "text", "text": instruction}]
        for url in image_urls:
            parts.append({"type": "image_url", "image_url": {"url": url}})
        return parts

    async def classify(
        self,
        image_urls: Sequence[str],
        instruction: str,
        max_tokens: int = 200,
    ) -> str:
        """Send images plus an instruction and return the raw text answer."""
        data = await self._complete({
            "model": self.model,
            "messages": [{"role": "user", "content": self._content(instruction, image_urls)}],
            "max_tokens": max_tokens,
        })
        choices = data.get("choices") or [{}]
        return (choices[0].get("message", {}).get("content") or "").strip()

    async def ask_label(
        self,
        image_url: str,
        instruction: str,
        labels: Sequence[str],
        default: str = "unknown",
    ) -> str:
        """Return the first of ``labels`` that appears in the answer, else ``default``."""
        answer = await self.classify([image_url], instruction, max_tokens=10)
        words = _WORD.findall(answer.lower())
        for label in labels:
            if label in words:
                return label
        return default

    async def ask_yes_no(self, image_urls: Sequence[str], instruction: str) -> bool:
        answer = await self.classify(image_urls, instruction, max_tokens=10)
        return answer.strip(' ."').lower().startswith("yes")

    async def ask_json(self, image_urls: Sequence[str], instruction: str) -> Dict[str, Any]:
        """Return the first JSON object found in the answer."""
        answer = await self.classify(image_urls, instruction)
        match = _JSON_OBJECT.search(answer)
        if not match:
            raise UnknownServiceError(f"No JSON object in classifier answer: {answer[:100]}")
        try:
            return json.loads(match.group(0))
        except ValueError as e:
            raise UnknownServiceError(f"Unparseable classifier answer: {answer[:100]}") from e

    async def generate(self, image_urls: Sequence[str], instruction: str) -> str:
        """Generate an image from ``image_urls`` and return its URL (often a data URL)."""
        data = await self._complete({
            "model": self.generation_model,
            "messages": [{"role": "user", "content": self._content(instruction, image_urls)}],
            "modalities": ["image", "text"],
        })
        try:
            message = data["choices"][0]["message"]
            return message["images"][0]["image_url"]["url"]
        except (KeyError, IndexError, TypeError) as e:
            raise UnknownServiceError("AI gateway returned no image") from e
