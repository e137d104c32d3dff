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
from typing import Optional, Tuple

from moni.platform import LoadAverage, PlatformProvider


class FakePlatform(PlatformProvider):
    """
    PlatformProvider returning whatever the test sets on it. Set `error` to make every fallible reading raise it,
    or `failing_reading` to make only that reading (e.g "cpu_percent") raise.
    """

    def __init__(self) -> None:
        self.unix_millis = 0
        self.cpu = 0.0
        self.mem = 0.0
        self.disk = 0.0
        self.load: LoadAverage = (0.0, 0.0, 0.0)
        self.disk_read_bytes = 0
        self.disk_write_bytes = 0
        self.net_recv_bytes = 0
        self.net_send_bytes = 0
        self.error: Optional[Exception] = None
        self.failing_reading: Optional[str] = None
        self.calls = 0

    def _maybe_fail(self, reading: str) -> None:
        self.calls += 1
        if self.error is not None and self.failing_reading in (None, reading):
            raise self.error

    def current_time_millis(self) -> int:
        return self.unix_millis

    def cpu_percent(self) -> float:
        self._maybe_fail("cpu_percent")
        return self.cpu

    def mem_percent(self) -> float:
        self._maybe_fail("mem_percent")
        return self.mem

    def disk_percent(self) -> float:
        self._maybe_fail("disk_percent")
        return self.disk

    def load_average(self) -> LoadAverage:
        self._maybe_fail("load_average")
        return self.load

    def disk_bytes(self) -> Tuple[int, int]:
        self._maybe_fail("disk_bytes")
        return self.disk_read_bytes, self.disk_write_bytes

    def net_bytes(self) -> Tuple[int, int]:
        self._maybe_fail("net_bytes")
        return self.net_recv_bytes, self.net_send_bytes
