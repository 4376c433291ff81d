import logging
import os
import time
from typing import Callable, Optional

import requests

from .config_loader import ExtractionSettings
from .errors import PermanentExtractionError, TransientExtractionError
from .models import ExtractedPayment, ExtractionResult

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (408, 429, 500, 502, 503, 504)
# Not the image's fault: retry on a later sweep rather than sending to review.
SERVICE_SIDE_STATUS = (401, 403)
PERMANENT_STATUS = (400, 413, 415, 422)


class ExtractionClient:
    """HTTP client for the payment screenshot extraction service."""

    def __init__(self, settings: ExtractionSettings, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self.session = session or requests.Session()
        self.headers = {}
        if settings.api_key:
            self.headers["Authorization"] = f"Bearer {settings.api_key}"
        self._sleep = sleep

    def extract(self, image_bytes: bytes, filename: str = "proof.jpg") -> ExtractionResult:
        """Send one screenshot for extraction.

        Retries timeouts and 408/429/5xx with exponential backoff up to
        ``max_retries`` extra attempts, then raises TransientExtractionError.
        400/413/415/422 raise PermanentExtractionError immediately. A 2xx body that
        cannot be parsed is retried like a 5xx.
        """
        if not image_bytes:
            raise PermanentExtractionError("empty image")

        url = f"{self.base_url}/api/extract"
        backoff = self.settings.backoff_seconds
        attempts = self.settings.max_retries + 1
        last_error = "no attempt made"

        for i in range(attempts):
            try:
                r = self.session.post(
                    url,
                    headers=self.headers,
                    files={"image": (filename, image_bytes)},
                    timeout=self.settings.timeout_seconds,
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning("extraction call failed (attempt %d/%d): %s", i + 1, attempts, last_error)
            else:
                if r.status_code in PERMANENT_STATUS:
                    raise PermanentExtractionError(f"extraction rejected image: HTTP {r.status_code} {r.text[:200]}")
                if r.status_code in RETRYABLE_STATUS or r.status_code in SERVICE_SIDE_STATUS:
                    last_error = f"HTTP {r.status_code}"
                    logger.warning("extraction service returned %s (attempt %d/%d)", r.status_code, i + 1, attempts)
                elif r.status_code >= 400:
                    raise PermanentExtractionError(f"extraction failed: HTTP {r.status_code} {r.text[:200]}")
                else:
                    try:
                        return parse_extraction_response(r.json())
                    except (ValueError, AttributeError, TypeError) as e:
                        last_error = f"malformed response: {type(e).__name__}: {e}"
                        logger.warning("extraction service sent a malformed body (attempt %d/%d): %s", i + 1, attempts, e)

            if i < attempts - 1:
                self._sleep(backoff)
                backoff = min(backoff * 2, 16)

        raise TransientExtractionError(last_error)


def parse_extraction_response(data: dict) -> ExtractionResult:
    if not isinstance(data, dict):
        raise PermanentExtractionError("extraction response is not a JSON object")
    body = data.get("data", data)
    candidates = []
    for c in body.get("candidates") or []:
        try:
            candidates.append(ExtractedPayment.from_dict(c))
        except (TypeError, ValueError, AttributeError):
            logger.warning("dropping malformed extraction candidate: %r", c)
    overall = body.get("overall_confidence", body.get("overallConfidence"))
    if overall is None:
        overall = max((c.confidence for c in candidates), default=0.0)
    return ExtractionResult(
        candidates=candidates,
        overall_confidence=max(0.0, min(1.0, float(overall))),
        requires_review=bool(body.get("requires_review", body.get("requiresReview", False))),
        model=body.get("model"),
    )


def load_image(file_url: str, timeout: float = 30.0) -> bytes:
    """Fetch screenshot bytes from an http(s) URL or a local path."""
    if file_url.startswith(("http://", "https://")):
        try:
            r = requests.get(file_url, timeout=timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientExtractionError(f"image download failed: {e}") from e
        if r.status_code == 404:
            raise PermanentExtractionError(f"image not found: {file_url}")
        if r.status_code >= 400:
            raise TransientExtractionError(f"image download failed: HTTP {r.status_code}")
        return r.content
    path = file_url[len("file://"):] if file_url.startswith("file://") else file_url
    if not os.path.exists(path):
        raise PermanentExtractionError(f"image not found: {file_url}")
    with open(path, "rb") as f:
        return f.read()
