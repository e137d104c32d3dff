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
import sys
import time
from abc import ABCMeta, abstractmethod
from functools import lru_cache
from typing import Iterable, List, Tuple

import psutil

from moni.log import get_logger_adapter

LINUX_PLATFORM_NAME = "linux"

logger = get_logger_adapter(__name__)

LoadAverage = Tuple[float, float, float]

# only whole disks are sampled: SATA/SCSI, NVMe and virtio/Xen disks
DISK_DEVICE_PREFIXES = ("sd", "nvme", "vd", "xvd")


@lru_cache(maxsize=None)
def is_linux() -> bool:
    return sys.platform == LINUX_PLATFORM_NAME


def select_whole_disks(devices: Iterable[str]) -> List[str]:
    """
    Picks the Linux block devices whose I/O should be summed, in the order the kernel lists them (a disk before
    its partitions). Partitions (sda1, nvme0n1p2) are skipped since their activity is already counted in their disk,
    and so are device-mapper, md, loop & optical devices which only re-count I/O of the disks below them.
    """
    selected: List[str] = []
    for device in devices:
        if not device.startswith(DISK_DEVICE_PREFIXES):
            continue
        if any(device.startswith(disk) for disk in selected):
            continue
        selected.append(device)
    return selected


class PlatformProvider(metaclass=ABCMeta):
    """
    Supplies raw, instantaneous readings of the machine's resource usage.
    Every reading except the current time may raise; byte counters are cumulative since boot.
    """

    @abstractmethod
    def current_time_millis(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def cpu_percent(self) -> float:
        raise NotImplementedError

    @abstractmethod
    def mem_percent(self) -> float:
        raise NotImplementedError

    @abstractmethod
    def disk_percent(self) -> float:
        raise NotImplementedError

    @abstractmethod
    def load_average(self) -> LoadAverage:
        """
        Returns the 1-minute, 5-minute and 15-minute load averages, in that order.
        """
        raise NotImplementedError

    @abstractmethod
    def disk_bytes(self) -> Tuple[int, int]:
        """
        Returns the cumulative (read, written) bytes of all disks.
        """
        raise NotImplementedError

    @abstractmethod
    def net_bytes(self) -> Tuple[int, int]:
        """
        Returns the cumulative (received, sent) bytes of all network interfaces.
        """
        raise NotImplementedError


class PsutilPlatform(PlatformProvider):
    LOOPBACK_PREFIX = "lo"

    def __init__(self) -> None:
        # psutil measures CPU utilization since the previous call, the first one is meaningless.
        psutil.cpu_percent(interval=None)

    def current_time_millis(self) -> int:
        return int(time.time() * 1000)

    def cpu_percent(self) -> float:
        return float(psutil.cpu_percent(interval=None))

    def mem_percent(self) -> float:
        return float(psutil.virtual_memory().percent)

    def disk_percent(self) -> float:
        total = used = 0
        for partition in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except OSError:
                logger.warning(f"Cannot read disk usage of {partition.mountpoint!r}, skipping it", exc_info=True)
                continue
            logger.debug(f"Disk usage: include {partition.device} (mount {partition.mountpoint})")
            total += usage.total
            used += usage.used
        if total == 0:
            return 0.0
        return used * 100.0 / total

    def load_average(self) -> LoadAverage:
        load1, load5, load15 = psutil.getloadavg()
        return load1, load5, load15

    def disk_bytes(self) -> Tuple[int, int]:
        per_disk = psutil.disk_io_counters(perdisk=True) or {}
        if is_linux():
            # psutil lists every block device in /sys/block, including dm-*/md*/loop* on top of the disks
            devices = select_whole_disks(per_disk)
        else:
            devices = list(per_disk)
        if not devices:
            logger.debug("Disk activity: no disks found")
        read_bytes = write_bytes = 0
        for device in devices:
            logger.debug(f"Disk activity: include {device!r}")
            read_bytes += per_disk[device].read_bytes
            write_bytes += per_disk[device].write_bytes
        return read_bytes, write_bytes

    def net_bytes(self) -> Tuple[int, int]:
        recv_bytes = sent_bytes = 0
        for nic, counters in psutil.net_io_counters(pernic=True).items():
            if nic.startswith(self.LOOPBACK_PREFIX):
                logger.debug(f"Net activity: skip {nic!r}")
                continue
            logger.debug(f"Net activity: include {nic!r}")
            recv_bytes += counters.bytes_recv
            sent_bytes += counters.bytes_sent
        return recv_bytes, sent_bytes
