"""
OpenRouter Base Client
======================

Shared async HTTP client for the OpenRouter chat-completions API, plus the
tolerant JSON parsing model output needs.
"""

import json
import httpx
import logging
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class LLMCallResult:
    """Result from an LLM API call"""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw_response: Optional[Dict] = None
    success: bool = True
    error: Optional[str] = None


class OpenRouterBaseClient:
    """
    Base async client for OpenRouter API.

    Transport failures come back as an unsuccessful LLMCallResult rather
    than an exception; callers decide how to surface them.
    """

    DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: int = 60,
        base_url: Optional[str] = None,
        app_name: str = "Loan Workspace Reconciliation"
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.app_name = app_name
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        """Close the HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        messages: List[Dict[str, str]],
        response_format: Optional[Dict] = None,
        temperature: float = 0,
        max_tokens: int = 2048
    ) -> LLMCallResult:
        """
        Make an API call to OpenRouter.

        Args:
            messages: List of message dicts with role and content
            response_format: Optional format spec (e.g., {"type": "json_object"})
            temperature: Sampling temperature (0 = deterministic)
            max_tokens: Maximum response tokens

        Returns:
            LLMCallResult with content or error
        """
        if not self.api_key:
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error="API key not configured"
            )

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        if response_format:
            payload["response_format"] = response_format

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": self.app_name
        }

        try:
            client = await self._get_client()
            response = await client.post(
                self.completions_url,
                json=payload,
                headers=headers
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"OpenRouter API error: {e.response.status_code}")
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error=f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"OpenRouter request failed: {e}")
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error=str(e)
            )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"OpenRouter response missing content: {e}")
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error=f"Response missing content: {e}",
                raw_response=data
            )

        usage = data.get("usage") or {}

        return LLMCallResult(
            content=content or "",
            model=self.model,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            raw_response=data,
            success=True
        )


def parse_json_robust(content: str) -> Tuple[Optional[Dict], bool, str]:
    """
    Parse JSON content robustly, handling common LLM output issues.

    Handles:
    - Empty content
    - Markdown code blocks (```json...```)
    - Prefix text before JSON
    - Multiple JSON objects (takes largest)

    Returns:
        Tuple of (parsed_dict, success, error_message)
    """
    if not content:
        return None, False, "Empty content"

    content = content.strip()

    # Remove markdown code blocks
    if "```json" in content:
        start = content.find("```json") + 7
        end = content.find("```", start)
        if end > start:
            content = content[start:end].strip()
    elif "```" in content:
        start = content.find("```") + 3
        end = content.find("```", start)
        if end > start:
            content = content[start:end].strip()

    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data, True, ""
    except json.JSONDecodeError:
        pass

    # Largest balanced {...} block that parses
    brace_blocks = []
    depth = 0
    start_idx = None

    for i, char in enumerate(content):
        if char == '{':
            if depth == 0:
                start_idx = i
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0 and start_idx is not None:
                brace_blocks.append(content[start_idx:i + 1])
                start_idx = None

    for block in sorted(brace_blocks, key=len, reverse=True):
        try:
            return json.loads(block), True, ""
        except json.JSONDecodeError:
            continue

    return None, False, "No JSON object found in response"
