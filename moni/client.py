#
# Copyright (C) 2024 Monibot
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
import gzip
import json
from io import BytesIO
from typing import IO, Any, Dict, List, cast

import requests
from requests import Session
from retry.api import retry_call

from moni import __version__
from moni.exceptions import APIError
from moni.log import get_logger_adapter
from moni.sampler import Sample

logger = get_logger_adapter(__name__)

DEFAULT_API_SERVER_ADDRESS = "https://monibot.io"
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_TRIALS = 12
DEFAULT_DELAY = 5.0

# errors worth another trial: the server may be restarting, or the network is flaky
RETRYABLE_EXCEPTIONS = (requests.ConnectionError, requests.Timeout, requests.HTTPError)


class MonibotAPIClient:
    BASE_PATH = "api"

    def __init__(
        self,
        *,
        api_key: str,
        server_address: str = DEFAULT_API_SERVER_ADDRESS,
        trials: int = DEFAULT_TRIALS,
        delay: float = DEFAULT_DELAY,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        curlify_requests: bool = False,
    ):
        assert trials >= 1, f"invalid trials {trials}"
        self._api_key = api_key
        self._server_address = server_address.rstrip("/")
        self._trials = trials
        self._delay = delay
        self._timeout = timeout
        self._curlify = curlify_requests
        self._init_session()

    def _init_session(self) -> None:
        self._session: Session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {self._api_key}",
                "User-Agent": f"moni/{__version__}",
            }
        )

    def get_base_url(self) -> str:
        return "{}/{}".format(self._server_address, self.BASE_PATH)

    def _request_once(self, method: str, url: str, data: Any) -> Any:
        opts: dict = {"headers": {}, "timeout": self._timeout}

        if data is not None:
            opts["headers"]["Content-Encoding"] = "gzip"
            opts["headers"]["Content-type"] = "application/json"
            buffer = BytesIO()
            with gzip.open(buffer, mode="wt", encoding="utf-8") as gzip_file:
                json.dump(data, cast(IO[str], gzip_file), ensure_ascii=False)
            opts["data"] = buffer.getvalue()

        resp = self._session.request(method, url, **opts)
        if self._curlify:
            import curlify  # type: ignore  # import here as it's only needed with -v.

            if resp.request.body is not None:
                # curlify decodes the body as utf-8, so undo our gzip (the request was already sent, it's fine to edit)
                assert resp.request.headers["Content-Encoding"] == "gzip"
                assert isinstance(resp.request.body, bytes)
                resp.request.body = gzip.decompress(resp.request.body)
                del resp.request.headers["Content-Encoding"]
            logger.debug("API request", curl_command=curlify.to_curl(resp.request), status_code=resp.status_code)

        if 400 <= resp.status_code < 500:
            try:
                response_data = resp.json()
            except ValueError:
                raise APIError(resp.text or f"{method} {url}: status {resp.status_code}")
            message = (
                response_data.get("message", "(no message in response)")
                if isinstance(response_data, dict)
                else str(response_data)
            )
            raise APIError(message, response_data if isinstance(response_data, dict) else None)
        else:
            resp.raise_for_status()

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def _send_request(self, method: str, path: str, data: Any = None) -> Any:
        url = "{}/{}".format(self.get_base_url(), path)
        # APIError (4xx) is not retried: repeating a rejected request won't help
        return retry_call(
            self._request_once,
            fargs=(method, url, data),
            exceptions=RETRYABLE_EXCEPTIONS,
            tries=self._trials,
            delay=self._delay,
            logger=logger,
        )

    def get(self, path: str) -> Any:
        return self._send_request("GET", path)

    def post(self, path: str, data: Any = None) -> Any:
        return self._send_request("POST", path, data)

    def get_ping(self) -> None:
        self.get("ping")

    def get_machines(self) -> List[Dict[str, Any]]:
        return cast(List[Dict[str, Any]], self.get("machines") or [])

    def get_machine(self, machine_id: str) -> Dict[str, Any]:
        return cast(Dict[str, Any], self.get(f"machine/{machine_id}"))

    def post_machine_sample(self, machine_id: str, sample: Sample) -> None:
        self.post(f"machine/{machine_id}/sample", sample.to_payload())

    def get_watchdogs(self) -> List[Dict[str, Any]]:
        return cast(List[Dict[str, Any]], self.get("watchdogs") or [])

    def get_watchdog(self, watchdog_id: str) -> Dict[str, Any]:
        return cast(Dict[str, Any], self.get(f"watchdog/{watchdog_id}"))

    def get_metrics(self) -> List[Dict[str, Any]]:
        return cast(List[Dict[str, Any]], self.get("metrics") or [])

    def get_metric(self, metric_id: str) -> Dict[str, Any]:
        return cast(Dict[str, Any], self.get(f"metric/{metric_id}"))
