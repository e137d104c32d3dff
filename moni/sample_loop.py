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
from threading import Event, Thread
from typing import Optional

from requests import RequestException

from moni.client import MonibotAPIClient
from moni.exceptions import APIError, PlatformReadError, ThreadStopTimeoutError
from moni.log import get_logger_adapter
from moni.sampler import Sample, Sampler
from moni.state import State

STOP_TIMEOUT_SECONDS = 30

logger = get_logger_adapter(__name__)


class MachineSampleLoop:
    """
    Samples the machine every `interval` seconds and posts the samples to Monibot.
    A failed tick (sampling or posting) is logged and skipped; the loop keeps going until stopped.
    """

    def __init__(
        self,
        sampler: Sampler,
        client: MonibotAPIClient,
        machine_id: str,
        interval: float,
        state: Optional[State] = None,
        stop_event: Optional[Event] = None,
    ):
        self._sampler = sampler
        self._client = client
        self._machine_id = machine_id
        self._interval = interval
        self._state = state
        self._stop_event = stop_event if stop_event is not None else Event()
        self._thread: Optional[Thread] = None

        # The activity counters are deltas, so the first sample only seeds the sampler and is never sent.
        try:
            self._sampler.sample()
        except PlatformReadError as e:
            logger.warning(f"Cannot take warm-up sample: {e}")

    def run(self) -> None:
        logger.info(f"Will send samples every {self._interval:g} seconds", machine_id=self._machine_id)
        while not self._stop_event.wait(self._interval):
            self.tick()

    def tick(self) -> Optional[Sample]:
        if self._state is not None:
            self._state.init_new_cycle()

        try:
            sample = self._sampler.sample()
        except PlatformReadError as e:
            logger.warning(f"Cannot sample: {e}")
            return None

        try:
            self._client.post_machine_sample(self._machine_id, sample)
        except (APIError, RequestException) as e:
            logger.warning(f"Cannot POST sample: {e}")
            return None

        logger.debug("Sample posted", **sample.to_payload())
        return sample

    def start(self) -> None:
        assert self._thread is None, "MachineSampleLoop is already running"
        self._thread = Thread(target=self.run, name="moni-sample-loop", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is None:
            return
        self._thread.join(STOP_TIMEOUT_SECONDS)
        if self._thread.is_alive():
            raise ThreadStopTimeoutError("Timed out while waiting for the MachineSampleLoop thread to stop")
        self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
