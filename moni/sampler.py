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
import math
from dataclasses import dataclass
from typing import Callable, Dict, Tuple, TypeVar, Union

from moni.exceptions import PlatformReadError
from moni.platform import PlatformProvider

MIN_PERCENT = 0
MAX_PERCENT = 100

T = TypeVar("T")


def sanitize_percent(value: float) -> int:
    """
    Rounds a percentage to the nearest integer (ties away from zero) and clamps it into [0, 100].
    NaN is treated as 0.
    """
    if math.isnan(value):
        return MIN_PERCENT
    if value >= MAX_PERCENT:
        return MAX_PERCENT
    if value <= MIN_PERCENT:
        return MIN_PERCENT
    # round() rounds half to even, we want 58.5 -> 59
    rounded = math.floor(value)
    if value - rounded >= 0.5:
        rounded += 1
    return int(rounded)


def compute_delta(current: int, previous: int) -> Tuple[int, int]:
    """
    Returns (delta, new_previous) for a monotonic counter.
    A counter that didn't advance (or went backwards, e.g after a device reset) yields no delta, and the previous
    value is kept as the high-water mark.
    """
    if current > previous:
        return current - previous, current
    return 0, previous


class CounterTracker:
    def __init__(self, name: str) -> None:
        self.name = name
        self._high_water_mark = 0

    @property
    def high_water_mark(self) -> int:
        return self._high_water_mark

    def peek(self, current: int) -> Tuple[int, int]:
        return compute_delta(current, self._high_water_mark)

    def commit(self, new_previous: int) -> None:
        assert new_previous >= self._high_water_mark, f"{self.name} high-water mark can't go backwards"
        self._high_water_mark = new_previous


@dataclass(frozen=True)
class Sample:
    timestamp: int  # milliseconds since epoch
    load1: float
    load5: float
    load15: float
    cpu_percent: int
    mem_percent: int
    disk_percent: int
    disk_read: int  # bytes since the previous sample
    disk_write: int
    net_recv: int
    net_send: int

    def to_payload(self) -> Dict[str, Union[int, float]]:
        # The keys match the schema expected by the collector one-to-one.
        return {
            "timestamp": self.timestamp,
            "load1": self.load1,
            "load5": self.load5,
            "load15": self.load15,
            "cpuPercent": self.cpu_percent,
            "memPercent": self.mem_percent,
            "diskPercent": self.disk_percent,
            "diskRead": self.disk_read,
            "diskWrite": self.disk_write,
            "netRecv": self.net_recv,
            "netSend": self.net_send,
        }


class Sampler:
    """
    Calculates a Sample of the current resource usage on every call to sample().

    The disk and network activity fields are deltas since the previous successful sample, so the first sample
    only seeds the counters and always reports zero activity. Not thread safe: callers must not run sample()
    concurrently on the same instance.
    """

    def __init__(self, platform: PlatformProvider) -> None:
        self._platform = platform
        self._seeded = False
        self._disk_read = CounterTracker("disk read bytes")
        self._disk_write = CounterTracker("disk write bytes")
        self._net_recv = CounterTracker("net recv bytes")
        self._net_send = CounterTracker("net send bytes")

    @property
    def seeded(self) -> bool:
        return self._seeded

    def counters(self) -> Dict[str, int]:
        return {
            tracker.name: tracker.high_water_mark
            for tracker in (self._disk_read, self._disk_write, self._net_recv, self._net_send)
        }

    @staticmethod
    def _read(reading: str, read_func: Callable[[], T]) -> T:
        try:
            return read_func()
        except Exception as e:
            raise PlatformReadError(reading, e) from e

    @classmethod
    def _read_values(cls, reading: str, read_func: Callable[[], Tuple[T, ...]], count: int) -> Tuple[T, ...]:
        def read() -> Tuple[T, ...]:
            values = tuple(read_func())
            if len(values) != count:
                raise ValueError(f"expected {count} values, got {len(values)}")
            return values

        return cls._read(reading, read)

    def sample(self) -> Sample:
        # Read everything before touching any state, so a failing reading leaves the counters as they were.
        load1, load5, load15 = self._read_values("load average", self._platform.load_average, 3)
        cpu_percent = self._read("cpu percent", self._platform.cpu_percent)
        mem_percent = self._read("mem percent", self._platform.mem_percent)
        disk_percent = self._read("disk percent", self._platform.disk_percent)
        disk_read_bytes, disk_write_bytes = self._read_values("disk bytes", self._platform.disk_bytes, 2)
        net_recv_bytes, net_send_bytes = self._read_values("net bytes", self._platform.net_bytes, 2)
        timestamp = self._platform.current_time_millis()

        readings = (
            (self._disk_read, disk_read_bytes),
            (self._disk_write, disk_write_bytes),
            (self._net_recv, net_recv_bytes),
            (self._net_send, net_send_bytes),
        )
        deltas = []
        for tracker, current in readings:
            if self._seeded:
                delta, new_previous = tracker.peek(current)
            else:
                # nothing to diff against yet, the first reading only sets the high-water mark
                delta, new_previous = 0, max(current, tracker.high_water_mark)
            deltas.append((tracker, delta, new_previous))

        for tracker, _, new_previous in deltas:
            tracker.commit(new_previous)
        self._seeded = True

        disk_read, disk_write, net_recv, net_send = (delta for _, delta, _ in deltas)
        return Sample(
            timestamp=timestamp,
            load1=load1,
            load5=load5,
            load15=load15,
            cpu_percent=sanitize_percent(cpu_percent),
            mem_percent=sanitize_percent(mem_percent),
            disk_percent=sanitize_percent(disk_percent),
            disk_read=disk_read,
            disk_write=disk_write,
            net_recv=net_recv,
            net_send=net_send,
        )
