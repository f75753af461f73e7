import logging
import threading
import time
from typing import Any, List, Optional, Sequence

from web3 import HTTPProvider

logger = logging.getLogger(__name__)

# Substrings providers use in rate-limit responses
RATE_LIMIT_HINTS = (
    "rate limit", "too many requests", "daily request count exceeded",
    "request limit", "over capacity", "project id request rate exceeded",
)
RATE_LIMIT_CODES = (-32005, 429)


class RotatingHTTPProvider(HTTPProvider):
    """
    HTTP provider over one or more RPC endpoints. A request that hits a rate
    limit or a connection error is retried on the next endpoint; once every
    endpoint has been tried the last failure is surfaced to the caller.
    """

    def __init__(self, rpc_urls: Sequence[str], request_kwargs: Optional[dict] = None,
                 backoff: float = 0.1):
        urls = list(dict.fromkeys(u.strip() for u in rpc_urls if u and u.strip()))
        if not urls:
            raise ValueError("rpc_urls must contain at least one URL")
        super().__init__(endpoint_uri=urls[0], request_kwargs=request_kwargs)
        self._urls: List[str] = urls
        self._idx = 0
        self._lock = threading.Lock()
        self._backoff = backoff

    @property
    def urls(self) -> List[str]:
        return list(self._urls)

    @property
    def current_url(self) -> str:
        with self._lock:
            return self._urls[self._idx]

    def _advance(self) -> None:
        with self._lock:
            self._idx = (self._idx + 1) % len(self._urls)
            self.endpoint_uri = self._urls[self._idx]
        logger.debug("Switched RPC endpoint to %s", self.endpoint_uri)

    @staticmethod
    def is_rate_limited(error_obj: Any) -> bool:
        if not isinstance(error_obj, dict):
            return False
        msg = str(error_obj.get("message", "")).lower()
        if any(hint in msg for hint in RATE_LIMIT_HINTS):
            return True
        return error_obj.get("code") in RATE_LIMIT_CODES

    def make_request(self, method, params):  # type: ignore[override]
        last_exc: Optional[BaseException] = None
        last_response = None

        for _ in range(len(self._urls)):
            try:
                response = super().make_request(method, params)
            except Exception as e:  # connection errors, timeouts, HTTP 429
                last_exc = e
                logger.warning("RPC %s failed on %s: %s", method, self.endpoint_uri, e)
            else:
                if isinstance(response, dict) and self.is_rate_limited(response.get("error")):
                    last_exc = None
                    last_response = response
                    logger.warning("RPC %s rate limited on %s", method, self.endpoint_uri)
                else:
                    return response
            self._advance()
            time.sleep(self._backoff)

        if last_exc is not None:
            raise last_exc
        return last_response
