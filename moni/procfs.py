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
"""
Linux platform provider that reads the kernel's counter files (/proc/loadavg, /proc/stat, /proc/diskstats,
/proc/net/dev) and the output of free(1) and df(1) directly, without psutil.
The parse_* functions only deal with text, so they can be tested against recorded outputs.
"""
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from moni.exceptions import ProcfsParseError
from moni.log import get_logger_adapter
from moni.platform import LoadAverage, PlatformProvider, select_whole_disks
from moni.utils import run_process

logger = get_logger_adapter(__name__)

PROC_ROOT = "/proc"
SECTOR_SIZE = 512  # /proc/diskstats always counts 512-byte sectors, whatever the device's block size is

# ethernet & wireless interfaces (eth0, enp4s0, wlp0s20f3, ...), loopback & virtual bridges are skipped
NET_DEVICE_PREFIXES = ("e", "w")

FREE_CMD = ["free", "-k"]
DF_CMD = ["df", "--exclude-type=tmpfs", "--total", "--output=source,size,used"]

_SPACES_RE = re.compile(r" {2,}")


def normalize_line(line: str) -> str:
    line = line.replace("\t", " ").replace("\r", "").replace("\n", "")
    return _SPACES_RE.sub(" ", line).strip()


def _normalized_lines(text: str) -> Iterator[str]:
    for line in text.splitlines():
        line = normalize_line(line)
        if line:
            yield line


def _parse_int(token: str, what: str, line: str) -> int:
    try:
        return int(token)
    except ValueError:
        raise ProcfsParseError(f"cannot parse {what} {token!r} in line {line!r}") from None


@dataclass(frozen=True)
class CpuStat:
    total: int
    idle: int


@dataclass(frozen=True)
class DiskStat:
    sectors_read: int
    sectors_written: int


@dataclass(frozen=True)
class NetStat:
    bytes_recv: int
    bytes_sent: int


def parse_load_avg(text: str) -> LoadAverage:
    # 0.54 0.56 0.55 1/1006 176235
    tokens = normalize_line(text).split(" ")
    if len(tokens) < 3:
        raise ProcfsParseError(f"expected at least 3 tokens in {text!r}")
    loads: List[float] = []
    for i, token in enumerate(tokens[:3]):
        try:
            loads.append(float(token))
        except ValueError:
            raise ProcfsParseError(f"cannot parse load average #{i} {token!r} in {text!r}") from None
    return loads[0], loads[1], loads[2]


def parse_cpu_stat(text: str) -> CpuStat:
    # cpu  611762 30 136480 16065151 13896 0 5946 0 0 0
    # cpu0 75636 5 17226 2003361 1647 0 2358 0 0 0
    for line in _normalized_lines(text):
        if not line.startswith("cpu "):
            continue
        tokens = line.split(" ")[1:]
        if len(tokens) < 5:
            raise ProcfsParseError(f"expected at least 5 values in {line!r}")
        values = [_parse_int(token, "cpu time", line) for token in tokens]
        # user nice system idle iowait irq softirq steal ...
        return CpuStat(total=sum(values), idle=values[3])
    raise ProcfsParseError("aggregate 'cpu' line not found")


def cpu_percent_between(last: CpuStat, current: CpuStat) -> float:
    total = current.total - last.total
    if total <= 0:
        # no ticks elapsed (or the counters were reset)
        return 0.0
    idle = current.idle - last.idle
    return (total - idle) * 100.0 / total


def _used_percent(total: int, used: int, line: str) -> float:
    if total <= 0:
        raise ProcfsParseError(f"invalid total {total} in line {line!r}")
    if used <= 0:
        raise ProcfsParseError(f"invalid used {used} in line {line!r}")
    if used > total:
        raise ProcfsParseError(f"invalid used {used} > total {total} in line {line!r}")
    return used * 100.0 / total


def parse_mem_percent(text: str) -> float:
    #                total        used        free      shared  buff/cache   available
    # Mem:        16072456     2864000      301288      433084    13681804    13208456
    # Swap:        1000444      161024      839420
    for line in _normalized_lines(text):
        if not line.startswith("Mem: "):
            continue
        tokens = line.split(" ")[1:]
        if len(tokens) < 3:
            raise ProcfsParseError(f"expected at least 3 values in {line!r}")
        total = _parse_int(tokens[0], "total", line)
        used = _parse_int(tokens[1], "used", line)
        return _used_percent(total, used, line)
    raise ProcfsParseError("'Mem:' line not found")


def parse_disk_percent(text: str) -> float:
    # Filesystem     1K-blocks      Used
    # /dev/nvme0n1p2 981876212 235000596
    # total          990394692 235006572
    for line in _normalized_lines(text):
        if not line.startswith("total "):
            continue
        tokens = line.split(" ")[1:]
        if len(tokens) < 2:
            raise ProcfsParseError(f"expected at least 2 values in {line!r}")
        total = _parse_int(tokens[0], "total", line)
        used = _parse_int(tokens[1], "used", line)
        return _used_percent(total, used, line)
    raise ProcfsParseError("'total' line not found")


def parse_disk_stat(text: str) -> DiskStat:
    """
    Sums the sectors read & written by all whole disks in /proc/diskstats.
    See https://www.kernel.org/doc/Documentation/admin-guide/iostats.rst for the columns:
        major minor name reads merged sectors_read ms_reading writes merged sectors_written ms_writing ...
    Which devices count is decided by select_whole_disks(), the same filter the psutil provider uses.
    """
    rows = [tokens for tokens in (line.split(" ") for line in _normalized_lines(text)) if len(tokens) >= 14]
    whole_disks = set(select_whole_disks(tokens[2] for tokens in rows))
    sectors_read = sectors_written = 0
    for tokens in rows:
        if tokens[2] not in whole_disks:
            continue
        whole_disks.remove(tokens[2])
        line = " ".join(tokens)
        sectors_read += _parse_int(tokens[5], "sectors read", line)
        sectors_written += _parse_int(tokens[9], "sectors written", line)
    return DiskStat(sectors_read=sectors_read, sectors_written=sectors_written)


def parse_net_stat(text: str) -> NetStat:
    # Inter-|   Receive                                                      |  Transmit
    #  face |       bytes packets errs  drop fifo frame compressed multicast |    bytes packets errs drop ...
    #     lo:   117864359   32173    0     0    0     0          0         0  117864359   32173    0    0 ...
    # enp4s0:    21640725   46246    0 13520    0     0          0      1053   13613968   31281    0    0 ...
    bytes_recv = bytes_sent = 0
    for line in _normalized_lines(text):
        # long interface names are glued to the first counter ("enp0s31f6:26234713008")
        tokens = line.replace(":", ": ", 1).split() if ":" in line else []
        if len(tokens) < 10:
            continue
        device = tokens[0]
        if not device.endswith(":"):
            continue
        if not device.startswith(NET_DEVICE_PREFIXES):
            continue
        bytes_recv += _parse_int(tokens[1], "bytes received", line)
        bytes_sent += _parse_int(tokens[9], "bytes sent", line)
    return NetStat(bytes_recv=bytes_recv, bytes_sent=bytes_sent)


class ProcfsPlatform(PlatformProvider):
    def __init__(self, proc_root: str = PROC_ROOT) -> None:
        self._proc_root = Path(proc_root)
        self._last_cpu_stat: Optional[CpuStat] = None

    def _read_proc_file(self, name: str) -> str:
        return (self._proc_root / name).read_text()

    def current_time_millis(self) -> int:
        return int(time.time() * 1000)

    def cpu_percent(self) -> float:
        """
        Returns the CPU utilization percentage since the last time this method was called (0 on the first call).
        """
        stat = parse_cpu_stat(self._read_proc_file("stat"))
        last_stat, self._last_cpu_stat = self._last_cpu_stat, stat
        if last_stat is None:
            return 0.0
        return cpu_percent_between(last_stat, stat)

    def mem_percent(self) -> float:
        return parse_mem_percent(run_process(FREE_CMD).stdout)

    def disk_percent(self) -> float:
        return parse_disk_percent(run_process(DF_CMD).stdout)

    def load_average(self) -> LoadAverage:
        return parse_load_avg(self._read_proc_file("loadavg"))

    def disk_bytes(self) -> Tuple[int, int]:
        stat = parse_disk_stat(self._read_proc_file("diskstats"))
        return stat.sectors_read * SECTOR_SIZE, stat.sectors_written * SECTOR_SIZE

    def net_bytes(self) -> Tuple[int, int]:
        stat = parse_net_stat(self._read_proc_file("net/dev"))
        return stat.bytes_recv, stat.bytes_sent
