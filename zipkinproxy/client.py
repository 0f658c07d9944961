import gzip
import json
import time
from typing import Any
from typing import List
from typing import Sequence
import urllib.parse

import requests

from .proxy import V1_SPANS_ENDPOINT
from .proxy import V2_SPANS_ENDPOINT
from .thrift import encode_thrift


class ProxyClient:
    """Submit Zipkin payloads to a running proxy."""

    def __init__(self, base_url: str, compress: bool = False):
        self._base_url = base_url
        self._compress = compress
        self._session = requests.Session()

    def _url(self, path: str) -> str:
        return urllib.parse.urljoin(self._base_url, path)

    def _post(self, path: str, content_type: str, body: bytes, **kwargs: Any) -> requests.Response:
        headers = {"Content-Type": content_type}
        if self._compress:
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"
        return self._session.post(self._url(path), data=body, headers=headers, **kwargs)

    def send_json_v1(self, spans: List[Any], **kwargs: Any) -> requests.Response:
        return self._post(V1_SPANS_ENDPOINT, "application/json", json.dumps(spans).encode(), **kwargs)

    def send_json_v2(self, spans: List[Any], **kwargs: Any) -> requests.Response:
        return self._post(V2_SPANS_ENDPOINT, "application/json", json.dumps(spans).encode(), **kwargs)

    def send_thrift(self, spans: Sequence[Any], **kwargs: Any) -> requests.Response:
        """Send zipkin_core.Span structs, see ``zipkinproxy.thrift``."""
        return self._post(V1_SPANS_ENDPOINT, "application/x-thrift", encode_thrift(spans), **kwargs)

    def wait_to_start(self, num_tries: int = 50, delay: float = 0.1) -> None:
        exc = []
        for i in range(num_tries):
            try:
                # Any HTTP response means the server is up.
                self.send_json_v2([])
            except requests.exceptions.RequestException as e:
                exc.append(e)
                time.sleep(delay)
            else:
                return
        raise AssertionError(f"Proxy did not start in time ({num_tries * delay} seconds). Got {exc[-1]}")
