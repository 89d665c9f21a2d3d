"""LLM chat client for the extraction engine.

Speaks two wire formats over one pooled ``httpx.AsyncClient``:

  ollama            POST {base}/api/chat             (native format)
  lmstudio, openai  POST {base}/v1/chat/completions  (OpenAI format)

Provider, URL and model are read from ``settings`` on every call unless
pinned in the constructor, so ``settings.update_llm_config`` takes effect
without rebuilding the engine.

A 400 from the provider is almost always a prompt that overflows the
context window; the longest message is shrunk and the request re-sent a
bounded number of times before the error propagates.
"""

from __future__ import annotations

import json
import re
import time

import httpx

from forecast_pipeline.config import settings
from forecast_pipeline.utils.logger import logger

_OVERFLOW_RETRIES = 2
_KEEP_RATIO = 0.6
_FENCE_RE = re.compile(r"```(?:json)?\s*|```\s*$", re.IGNORECASE)

_http: httpx.AsyncClient | None = None


def _client() -> httpx.AsyncClient:
    """Shared connection pool for every extraction worker."""
    global _http  # noqa: PLW0603
    if _http is None or _http.is_closed:
        _http = httpx.AsyncClient(
            # transcripts of long videos can keep a local model busy for minutes
            timeout=httpx.Timeout(600.0, connect=10.0, write=60.0, pool=60.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _http


async def close_shared_client() -> None:
    global _http  # noqa: PLW0603
    if _http is not None and not _http.is_closed:
        await _http.aclose()
    _http = None


class LLMService:
    """Chat completions against Ollama or an OpenAI-compatible server."""

    def __init__(
        self,
        provider: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
    ) -> None:
        self._provider = provider
        self._base_url = base_url
        self._model = model
        self._api_key = api_key

    @property
    def provider(self) -> str:
        return self._provider or settings.LLM_PROVIDER

    @property
    def base_url(self) -> str:
        return (self._base_url or settings.LLM_BASE_URL).rstrip("/")

    @property
    def model(self) -> str:
        return self._model or settings.LLM_MODEL

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else settings.OPENAI_API_KEY

    async def chat(
        self,
        system: str,
        user: str,
        *,
        json_mode: bool = True,
        max_tokens: int | None = None,
    ) -> str:
        """Return the assistant text for one system + user exchange.

        Raises ``httpx.HTTPError`` on transport failures, on non-2xx
        responses that survive the overflow retries, and (as
        ``httpx.DecodingError``) on a 2xx body that is not a chat response.
        """
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        started = time.perf_counter()

        for attempt in range(_OVERFLOW_RETRIES + 1):
            url, payload, headers = self._build_request(messages, json_mode, max_tokens)
            size = sum(len(m["content"]) for m in messages)
            logger.info(
                "[LLM] %s → %s model=%s (~%d tokens)",
                self.provider, url, self.model, size // 4,
            )
            resp = await _client().post(url, json=payload, headers=headers)
            if resp.status_code == 400 and attempt < _OVERFLOW_RETRIES:
                logger.warning(
                    "[LLM] 400 from %s, shrinking prompt (retry %d): %s",
                    self.provider, attempt + 1, resp.text[:300],
                )
                messages = self._shrink_longest(messages)
                continue
            if resp.is_error:
                logger.error("[LLM] %s returned %d: %s", self.provider, resp.status_code, resp.text[:500])
            resp.raise_for_status()
            break

        try:
            data = resp.json()
        except ValueError as exc:
            raise httpx.DecodingError(
                f"{self.provider} returned a non-JSON body: {resp.text[:200]!r}",
                request=resp.request,
            ) from exc
        if not isinstance(data, dict):
            raise httpx.DecodingError(
                f"{self.provider} returned {type(data).__name__} instead of an object",
                request=resp.request,
            )
        content = self._content_of(data)
        logger.info(
            "[LLM] %s answered in %.2fs (%d chars)",
            self.provider, time.perf_counter() - started, len(content),
        )
        return content

    # ------------------------------------------------------------------
    # Wire formats
    # ------------------------------------------------------------------

    def _build_request(
        self, messages: list[dict], json_mode: bool, max_tokens: int | None,
    ) -> tuple[str, dict, dict[str, str]]:
        if self.provider == "ollama":
            options: dict = {
                "temperature": settings.LLM_TEMPERATURE,
                "num_ctx": settings.LLM_CONTEXT_SIZE,
            }
            if max_tokens:
                options["num_predict"] = max_tokens
            payload: dict = {
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": options,
            }
            if json_mode:
                payload["format"] = "json"
            return f"{self.base_url}/api/chat", payload, {}

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": settings.LLM_TEMPERATURE,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        # LM Studio rejects response_format
        if json_mode and self.provider != "lmstudio":
            payload["response_format"] = {"type": "json_object"}
        return f"{self.base_url}/v1/chat/completions", payload, self._auth_headers()

    def _content_of(self, data: dict) -> str:
        """Assistant text from a decoded response; a body of the wrong
        shape is reported like an undecodable one."""
        try:
            if self.provider == "ollama":
                content = (data.get("message") or {}).get("content")
            else:
                choices = data.get("choices") or [{}]
                content = (choices[0].get("message") or {}).get("content")
        except (AttributeError, IndexError, KeyError, TypeError) as exc:
            raise httpx.DecodingError(
                f"{self.provider} response has an unexpected shape: {exc}",
            ) from exc
        return content if isinstance(content, str) else ""

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    @staticmethod
    def _shrink_longest(messages: list[dict]) -> list[dict]:
        """Keep the head and tail of the longest message, drop its middle."""
        target = max(range(len(messages)), key=lambda i: len(messages[i]["content"]))
        text = messages[target]["content"]
        keep = int(len(text) * _KEEP_RATIO) // 2
        shrunk = f"{text[:keep]}\n\n[... trimmed to fit the context window ...]\n\n{text[-keep:]}"
        logger.info("[LLM] Shrunk message %d: %d → %d chars", target, len(text), len(shrunk))
        return [
            {**m, "content": shrunk} if i == target else m
            for i, m in enumerate(messages)
        ]

    # ------------------------------------------------------------------
    # Response cleanup
    # ------------------------------------------------------------------

    @staticmethod
    def clean_json_response(raw: str) -> str:
        """Drop markdown fences and return the first JSON value that parses.

        Each ``{`` or ``[`` is tried in turn, so prose before the payload is
        skipped.  When nothing parses (e.g. output cut off by max_tokens)
        the text from the first bracket on is returned and left for the
        caller's parser to reject.
        """
        text = _FENCE_RE.sub("", raw or "").strip()
        decoder = json.JSONDecoder()
        starts = [i for i, ch in enumerate(text) if ch in "{["]
        for start in starts:
            try:
                _, end = decoder.raw_decode(text, start)
            except json.JSONDecodeError as exc:
                if exc.pos >= len(text):
                    # truncated: a nested value would only be a fragment
                    return text[starts[0]:]
                continue
            return text[start:end]
        return text[starts[0]:] if starts else text

    async def health_check(self) -> dict:
        """List the models the provider serves and whether ours is among them."""
        status = {"provider": self.provider, "active_url": self.base_url}
        if self.provider == "ollama":
            url, key, field = f"{self.base_url}/api/tags", "models", "name"
        else:
            url, key, field = f"{self.base_url}/v1/models", "data", "id"
        try:
            resp = await _client().get(url, headers=self._auth_headers(), timeout=5.0)
            resp.raise_for_status()
            models = [m.get(field, "") for m in resp.json().get(key, [])]
        except (httpx.HTTPError, ValueError) as exc:
            return {**status, "status": "error", "error": str(exc)}
        return {
            **status,
            "status": "ok",
            "models": models,
            "configured_model": self.model,
            "model_available": self.model in models,
        }
