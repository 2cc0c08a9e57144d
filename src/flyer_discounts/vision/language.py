from __future__ import annotations

import base64
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from openai import APIConnectionError, APIStatusError, OpenAI

from ..config import Settings
from ..errors import InvalidInput, UpstreamClientError, UpstreamQuotaExceeded, UpstreamServerError
from ..logging import get_logger
from .retry import call_with_backoff, default_policies

LOG = get_logger("language-client")


def image_data_url(image_bytes: bytes, mime_type: str = "image/jpeg") -> str:
    b64 = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{mime_type};base64,{b64}"


def sniff_mime_type(image_bytes: bytes) -> str:
    if image_bytes.startswith(b"\x89PNG"):
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


class LanguageClient:
    """Chat completions against an OpenAI-compatible endpoint (OpenRouter by default).

    SDK retries are disabled; the shared backoff policy decides what to retry.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        client: Optional[OpenAI] = None,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        timeout: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.max_attempts = max_attempts
        self.policies = default_policies(base_delay)
        self.timeout = timeout
        self._sleep = sleep
        if client is None:
            if not api_key:
                raise InvalidInput("LLM_API_KEY missing in env/.env; cannot call the language model")
            http_client = httpx.Client(
                timeout=httpx.Timeout(connect=10.0, read=timeout, write=30.0, pool=10.0),
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=30),
            )
            client = OpenAI(
                api_key=api_key,
                base_url=base_url,
                http_client=http_client,
                max_retries=0,
            )
            if (os.environ.get("OPENAI_LOG") or "").lower() == "debug":
                logging.getLogger("httpx").setLevel(logging.DEBUG)
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "LanguageClient":
        return cls(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            max_attempts=settings.vision_max_attempts,
            base_delay=settings.vision_base_delay,
            **kwargs,
        )

    # ---- core request helpers ----------------------------------------------------
    def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        operation: str,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> str:
        def _once() -> str:
            try:
                resp = self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    timeout=self.timeout,
                )
            except APIStatusError as exc:
                body = getattr(exc.response, "text", None)
                if exc.status_code == 429:
                    raise UpstreamQuotaExceeded(str(exc), status_code=429, body=body) from exc
                if exc.status_code >= 500:
                    raise UpstreamServerError(str(exc), status_code=exc.status_code, body=body) from exc
                raise UpstreamClientError(str(exc), status_code=exc.status_code, body=body) from exc
            except APIConnectionError as exc:
                raise UpstreamServerError(f"Connection error: {exc}") from exc

            choices = resp.choices or []
            if not choices:
                raise UpstreamServerError(f"Model returned no choices for {operation}")
            return choices[0].message.content or ""

        t0 = time.perf_counter()
        text = call_with_backoff(
            _once,
            operation=operation,
            max_attempts=self.max_attempts,
            policies=self.policies,
            sleep=self._sleep,
        )
        LOG.info("%s finished in %.2fs model=%s (%d chars)", operation, time.perf_counter() - t0, self.model, len(text))
        return text

    def complete(self, prompt: str, *, operation: str = "complete", **kwargs: Any) -> str:
        messages = [{"role": "user", "content": prompt}]
        return self.chat(messages, operation=operation, **kwargs)

    def complete_with_image(
        self,
        prompt: str,
        image_bytes: bytes,
        *,
        mime_type: Optional[str] = None,
        operation: str = "complete-with-image",
        **kwargs: Any,
    ) -> str:
        url = image_data_url(image_bytes, mime_type or sniff_mime_type(image_bytes))
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": url}},
                ],
            }
        ]
        return self.chat(messages, operation=operation, **kwargs)
