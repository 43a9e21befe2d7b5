import json
from typing import Any, Dict, Optional

import httpx

from .errors import ExternalPermanentError, ExternalRateLimitError, ExternalTransientError
from .rate_limiter import parse_retry_after

TRANSIENT_STATUS_CODES = {408, 423, 425, 500, 502, 503, 504}


def extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            for key in ("message", "error", "detail"):
                val = data.get(key)
                if isinstance(val, str) and val.strip():
                    return val
                if isinstance(val, dict) and isinstance(val.get("message"), str):
                    return val["message"]
            return json.dumps(data, ensure_ascii=True)
    except ValueError:
        pass
    return response.text or ""


def raise_for_external_status(response: httpx.Response, provider: str, context: Optional[Dict[str, Any]] = None) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = extract_error_detail(response)
    ctx = {"provider": provider, "status_code": status, "detail": detail[:500], **(context or {})}
    if status == 429:
        raise ExternalRateLimitError(
            "RATE_LIMITED",
            f"{provider} rate limit hit",
            ctx,
            status_code=status,
            retry_after_s=parse_retry_after(response.headers.get("retry-after")),
        )
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise ExternalTransientError("UPSTREAM_UNAVAILABLE", f"{provider} returned {status}", ctx, status_code=status)
    raise ExternalPermanentError("UPSTREAM_REJECTED", f"{provider} rejected request ({status}): {detail[:200]}", ctx, status_code=status)


def transport_error(exc: httpx.RequestError, provider: str) -> ExternalTransientError:
    return ExternalTransientError(
        "TRANSPORT_ERROR",
        f"{provider} request failed: {exc}",
        {"provider": provider, "exception": exc.__class__.__name__},
    )
