"""HTTP client used by channel senders.

One attempt per call: retry and backoff belong to the notification
dispatcher, which tracks them per notification record.
"""
import time
import logging
import requests

from utils.errors import DeliveryError

logger = logging.getLogger("opsmonitor.http")


class HTTPClient:
    """Thin requests.Session wrapper that turns failures into DeliveryError."""

    def __init__(self, timeout=10, headers=None, channel=None):
        self.timeout = timeout
        self.channel = channel
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "OpsMonitor/1.0"})
        if headers:
            self.session.headers.update(headers)

    def post_json(self, url, payload, headers=None, method="POST", params=None):
        """Send a JSON body and return the response text. 2xx is success."""
        if not url:
            raise DeliveryError("No URL configured", channel=self.channel)
        try:
            start = time.time()
            resp = self.session.request(method, url, json=payload, headers=headers,
                                        params=params, timeout=self.timeout)
            latency = int((time.time() - start) * 1000)
            logger.debug(f"{method} {url} → {resp.status_code} ({latency}ms)")
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"Request to {url} failed: {e}", channel=self.channel) from e

        if 200 <= resp.status_code < 300:
            return resp.text

        raise DeliveryError(
            f"HTTP {resp.status_code} from {url}",
            channel=self.channel,
            status_code=resp.status_code,
            response_body=resp.text[:1000],
        )
