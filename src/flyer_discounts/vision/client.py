from __future__ import annotations

import base64
import binascii
import re
import time
from typing import Any, Callable, Dict, Optional, Union

import requests

from ..config import Settings
from ..errors import (
    ContentPolicyViolation,
    InvalidInput,
    UpstreamClientError,
    UpstreamQuotaExceeded,
    UpstreamServerError,
)
from ..logging import get_logger
from .auth import TokenCache, service_account_token_source
from .retry import call_with_backoff, default_policies

LOG = get_logger("vision-client")

# Decoded size of the shortest base64 payload the endpoint is worth calling with (100 chars).
MIN_IMAGE_BYTES = 75
CONTENT_POLICY_MARKERS = ("content policy", "58061214")
_DATA_URL_PREFIX = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")

ImagePayload = Union[bytes, bytearray, str]


def encode_image_payload(image: ImagePayload) -> str:
    """Return clean base64 text for raw bytes, base64 text or a data: URL.

    Raises InvalidInput when the payload does not decode to at least
    MIN_IMAGE_BYTES bytes.
    """
    if isinstance(image, (bytes, bytearray)):
        raw = bytes(image)
    elif isinstance(image, str):
        text = _DATA_URL_PREFIX.sub("", image.strip())
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidInput(f"Image payload is not valid base64: {exc}") from exc
    else:
        raise InvalidInput(f"Unsupported image payload type: {type(image).__name__}")

    if len(raw) < MIN_IMAGE_BYTES:
        raise InvalidInput(f"Image payload too short ({len(raw)} bytes), likely invalid")
    return base64.b64encode(raw).decode("ascii")


def _is_content_policy(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in CONTENT_POLICY_MARKERS)


class VisionClient:
    """Thin wrapper around the image-generation predict endpoint.

    Owns request construction, the shared bearer token and retry/backoff.
    The decoded JSON body is returned as-is; callers interpret predictions.
    """

    def __init__(
        self,
        *,
        predict_url: str,
        token_provider: Callable[[], str],
        session: Optional[requests.Session] = None,
        max_attempts: int = 4,
        base_delay: float = 1.0,
        request_timeout: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.predict_url = predict_url
        self._token_provider = token_provider
        self.session = session or requests.Session()
        self.max_attempts = max_attempts
        self.policies = default_policies(base_delay)
        self.request_timeout = request_timeout
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "VisionClient":
        cache = TokenCache(service_account_token_source(settings.credentials_path))
        return cls(
            predict_url=settings.vision_predict_url,
            token_provider=cache.get,
            max_attempts=settings.vision_max_attempts,
            base_delay=settings.vision_base_delay,
            **kwargs,
        )

    def call_vision_api(self, prompt: str, image_bytes: ImagePayload, operation_tag: str) -> Dict[str, Any]:
        if not prompt or not prompt.strip():
            raise InvalidInput("Prompt is empty or invalid")
        encoded = encode_image_payload(image_bytes)

        body = {
            "instances": [
                {
                    "prompt": prompt,
                    "image": {"bytesBase64Encoded": encoded},
                }
            ],
            "parameters": {
                "sampleCount": 1,
                "aspectRatio": "1:1",
                "safetyFilterLevel": "block_some",
                "personGeneration": "dont_allow",
            },
        }
        LOG.info(
            "Calling vision endpoint for %s (prompt %d chars, image %d b64 chars)",
            operation_tag,
            len(prompt),
            len(encoded),
        )
        return call_with_backoff(
            lambda: self._post(body, operation_tag),
            operation=operation_tag,
            max_attempts=self.max_attempts,
            policies=self.policies,
            sleep=self._sleep,
        )

    def _post(self, body: Dict[str, Any], operation_tag: str) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._token_provider()}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(self.predict_url, json=body, headers=headers, timeout=self.request_timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise UpstreamServerError(f"Network error for {operation_tag}: {exc}") from exc

        if resp.status_code < 400:
            try:
                return resp.json()
            except ValueError as exc:
                raise UpstreamServerError(
                    f"Non-JSON response for {operation_tag}", status_code=resp.status_code, body=resp.text
                ) from exc

        text = resp.text or ""
        LOG.error("Vision HTTP %s for %s: %s", resp.status_code, operation_tag, text[:500])
        if _is_content_policy(text):
            raise ContentPolicyViolation(
                f"Content policy violation for {operation_tag}", status_code=resp.status_code, body=text
            )
        if resp.status_code == 429:
            raise UpstreamQuotaExceeded(
                f"Quota exceeded for {operation_tag}", status_code=resp.status_code, body=text
            )
        if resp.status_code >= 500:
            raise UpstreamServerError(
                f"Server error for {operation_tag}: {resp.status_code}", status_code=resp.status_code, body=text
            )
        raise UpstreamClientError(
            f"Vision API failed for {operation_tag}: {resp.status_code}", status_code=resp.status_code, body=text
        )
