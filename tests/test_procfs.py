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
Tests for the parsers from moni/procfs.py, against outputs recorded on real machines.
"""
from pathlib import Path
from subprocess import CompletedProcess
from typing import List

import pytest

from moni import procfs
from moni.exceptions import ProcfsParseError
from moni.procfs import (
    CpuStat,
    DiskStat,
    NetStat,
    ProcfsPlatform,
    cpu_percent_between,
    normalize_line,
    parse_cpu_stat,
    parse_disk_percent,
    parse_disk_stat,
    parse_load_avg,
    parse_mem_percent,
    parse_net_stat,
)

FREE_OUTPUT = """
               total        used        free      shared  buff/cache   available
Mem:        16072456     2864000      301288      433084    13681804    13208456
Swap:        1000444      161024      839420
"""

DF_OUTPUT = """
Filesystem     1K-blocks      Used
udev             7995232         0
/dev/nvme0n1p2 981876212 235000596
/dev/nvme0n1p1    523248      5976
total          990394692 235006572
"""

PROC_STAT = """
cpu  634755 30 142645 16649013 14328 0 6168 0 0 0
cpu0 78454 5 17986 2076297 1702 0 2432 0 0 0
cpu1 79965 6 17364 2082887 1852 0 722 0 0 0
"""

NVME_DISKSTATS = """
259       0 nvme0n1   348631 57325 49778168 51034 237722 390973 34542122 662471 0 262444 729800 0 0 0 0 14038 16295
259       1 nvme0n1p1    187  1000    13454    31      2      0        2      7 0     60     39 0 0 0 0 0 0
259       2 nvme0n1p2 348152 56277 49752186 50957 237639 388315 34512056 662230 0 262220 713187 0 0 0 0 0 0
"""

NET_DEV_HEADER = """Inter-|   Receive                                                      |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
"""


def test_normalize_line() -> None:
    assert normalize_line("\t  sda   1\t\t2 \r\n") == "sda 1 2"
    assert normalize_line("") == ""


def test_parse_load_avg() -> None:
    assert parse_load_avg("2.01 0.56 0.15 1/1006 176235\n") == (2.01, 0.56, 0.15)


@pytest.mark.parametrize("text", ["", "0.54 0.56", "0.54 abc 0.55 1/1006 176235"])
def test_parse_load_avg_invalid(text: str) -> None:
    with pytest.raises(ProcfsParseError):
        parse_load_avg(text)


def test_parse_mem_percent() -> None:
    assert round(parse_mem_percent(FREE_OUTPUT)) == 18


@pytest.mark.parametrize(
    "text",
    [
        pytest.param("Swap: 1000444 161024 839420", id="no-mem-line"),
        pytest.param("Mem: 16072456 2864000", id="too-few-values"),
        pytest.param("Mem: 0 0 0", id="zero-total"),
        pytest.param("Mem: 100 200 0", id="used-above-total"),
        pytest.param("Mem: 100 abc 0", id="not-a-number"),
    ],
)
def test_parse_mem_percent_invalid(text: str) -> None:
    with pytest.raises(ProcfsParseError):
        parse_mem_percent(text)


def test_parse_disk_percent() -> None:
    assert round(parse_disk_percent(DF_OUTPUT)) == 24


@pytest.mark.parametrize(
    "text",
    [
        pytest.param("Filesystem 1K-blocks Used\n/dev/sda1 100 50", id="no-total-line"),
        pytest.param("total 990394692", id="too-few-values"),
        pytest.param("total 100 0", id="zero-used"),
        pytest.param("total 100 101", id="used-above-total"),
    ],
)
def test_parse_disk_percent_invalid(text: str) -> None:
    with pytest.raises(ProcfsParseError):
        parse_disk_percent(text)


def test_parse_cpu_stat() -> None:
    assert parse_cpu_stat(PROC_STAT) == CpuStat(total=17446939, idle=16649013)


@pytest.mark.parametrize("text", ["cpu0 78454 5 17986 2076297 1702 0 2432 0 0 0", "cpu 1 2 3 4", "cpu 1 2 3 4 x"])
def test_parse_cpu_stat_invalid(text: str) -> None:
    with pytest.raises(ProcfsParseError):
        parse_cpu_stat(text)


def test_cpu_percent_between() -> None:
    last = CpuStat(total=1000, idle=800)
    assert cpu_percent_between(last, CpuStat(total=1100, idle=875)) == 25.0
    assert cpu_percent_between(last, last) == 0.0


@pytest.mark.parametrize(
    "text, expected",
    [
        pytest.param(NVME_DISKSTATS, DiskStat(49778168, 34542122), id="nvme-partitions-skipped"),
        pytest.param(
            NVME_DISKSTATS
            + " 13       3 sda        48631   7325  778168  1034   7722  90973  4542122  62471 0 62444   29800"
            " 0 0 0 0 4038 6295\n",
            DiskStat(49778168 + 778168, 34542122 + 4542122),
            id="multiple-disks",
        ),
        pytest.param(
            """
  259       0 nvme0n1 362239 46299 56104016 50812 164382 271075 31063762 427750 0 237596 488351 0 0 0 0 8754 9787
  259       1 nvme0n1p1 187 1000 13454 29 2 0 2 0 0 52 29 0 0 0 0 0 0
  259       2 nvme0n1p2 361764 45248 56078058 50743 164357 270919 31062336 427726 0 237536 478470 0 0 0 0 0 0
  259       4 nvme1n1 328 0 18150 55 0 0 0 0 0 56 55 0 0 0 0 0 0
  259       5 nvme1n1p1 58 0 4192 10 0 0 0 0 0 28 10 0 0 0 0 0 0
  7       0 loop0 0 0 0 0 0 0 0 0 0 0 0 0 0 0 0 0 0
  7       1 loop1 0 0 0 0 0 0 0 0 0 0 0 0 0 0 0 0 0
""",
            DiskStat(56104016 + 18150, 31063762),
            id="two-nvme-and-loops",
        ),
        pytest.param(
            """
\t8       0 sda 80084 15703 18492198 19522 5844738 2423893 86294228 1739631 0 4086808 1850825 15827 2 56772622 5738
\t8       1 sda1 79680 10018 18464405 19458 5799604 2423893 86294226 1735890 0 4086728 1761086 15823 0 56281328 5737
\t8      14 sda14 55 0 440 6 0 0 0 0 0 36 6 0 0 0 0 0 0
   11       0 sr0 9 0 3 0 0 0 0 0 0 16 0 0 0 0 0 0 0
""",
            DiskStat(18492198, 86294228),
            id="sata-with-cdrom",
        ),
        pytest.param(
            """
   8       0 sda 116758444 39021759 19926482661 203182717 26000897 8268143 3426527240 237899876 0 54951320 275172048
   8       1 sda1 932947 115896 134102032 1387743 1249 1439 17766 32427 0 327904 1378300 0 0 0 0
   8      16 sdb 110318118 11905564 15643223942 1882821133 29859093 37404888 7649927176 643942724 0 119562340 2134899
   8      17 sdb1 866789 180858 134088392 14575763 1222 1466 17766 104537 0 933184 14547152 0 0 0 0
   9       0 md0 1286 0 15896 0 2154 0 17232 0 0 0 0 0 0 0 0
   9       1 md1 625 0 10952 0 8451 0 52532 0 0 0 0 0 0 0 0\t
""",
            DiskStat(19926482661 + 15643223942, 3426527240 + 7649927176),
            id="raid-members-only",
        ),
        pytest.param(
            """
 252       0 vda 20475 6201 1530698 9338 114409 61577 2946834 89624 0 101688 104118 0 0 0 0
 252       1 vda1 20320 6201 1523218 9287 114409 61577 2946834 89624 0 101652 98912 0 0 0 0
 202       0 xvdb 100 0 2000 0 50 0 1000 0 0 0 0 0 0 0 0
""",
            DiskStat(1530698 + 2000, 2946834 + 1000),
            id="virtual-disks",
        ),
        pytest.param(
            """
   8       0 sda 500 0 2000 0 300 0 4000 0 0 0 0 0 0 0 0
   8       1 sda1 500 0 2000 0 300 0 4000 0 0 0 0 0 0 0 0
 253       0 dm-0 500 0 2000 0 300 0 4000 0 0 0 0 0 0 0 0
""",
            DiskStat(2000, 4000),
            id="lvm-volume-not-counted",
        ),
        pytest.param(
            """
  0       0 loop1 348631 57325 49778168 51034 237722 390973 34542122 662471 0 262444 729800 0 0 0 0 14038 16295
 14       3 fda        48631 7325 9778168 1034 37722 90973 4542122 62471 0 62444 29800 0 0 0 0 4038 6295
  8       0 sda 1 2 3
""",
            DiskStat(0, 0),
            id="unknown-devices-and-short-lines",
        ),
    ],
)
def test_parse_disk_stat(text: str, expected: DiskStat) -> None:
    assert parse_disk_stat(text) == expected


def test_parse_disk_stat_invalid() -> None:
    with pytest.raises(ProcfsParseError):
        parse_disk_stat("8 0 sda 1 2 x 4 5 6 7 8 9 10 11 12")


@pytest.mark.parametrize(
    "text, expected",
    [
        pytest.param(
            NET_DEV_HEADER + "enp4s0:    21640725   46246    0 13520    0     0          0      1053   13613968"
            "   31281    0    0    0     0       0          0\n",
            NetStat(21640725, 13613968),
            id="single",
        ),
        pytest.param(
            NET_DEV_HEADER
            + "    lo:   117864359   32173    0     0    0     0          0         0  117864359   32173    0    0"
            "    0     0       0          0\n"
            "enp4s0:    21640725   46246    0 13520    0     0          0      1053   13613968   31281    0    0"
            "    0     0       0          0\n"
            "wlp0s20f3:        1       2    3     4    5     6          7         8          9      10   11   12"
            "   13    14      15         16\n",
            NetStat(21640725 + 1, 13613968 + 9),
            id="ethernet-and-wireless",
        ),
        pytest.param(
            NET_DEV_HEADER
            + "    lo:   117864359   32173    0     0    0     0          0         0  117864359   32173    0    0"
            "    0     0       0          0\n",
            NetStat(0, 0),
            id="loopback-only",
        ),
        pytest.param(
            NET_DEV_HEADER
            + "enp0s31f6: 26234713008 236646952    0    0    0     0          0         3 758050187292 527772993"
            "    0    0    0     0       0          0\n"
            "    lo: 77517386200 43681074    0    0    0     0          0         0 77517386200 43681074    0"
            "    0    0     0       0          0\n",
            NetStat(26234713008, 758050187292),
            id="big-counters",
        ),
        pytest.param(
            NET_DEV_HEADER
            + "  eth0: 1056266878 3444386    0    0    0     0          0         0 2143361438 3516390    0    0"
            "    0     0       0          0\n"
            "  eth1:   56266878 3444386    0    0    0     0          0         0   43361438 3516390    0    0"
            "    0     0       0          0\n"
            "  wlp0:     266878 3444386    0    0    0     0          0         0     361438 3516390    0    0"
            "    0     0       0          0\n"
            "docker0:    5000    10    0    0    0     0          0         0     6000   10    0    0"
            "    0     0       0          0\n",
            NetStat(1056266878 + 56266878 + 266878, 2143361438 + 43361438 + 361438),
            id="many-nics",
        ),
        pytest.param(
            NET_DEV_HEADER + "eth0:1056266878 3444386 0 0 0 0 0 0 2143361438 3516390 0 0 0 0 0 0\n",
            NetStat(1056266878, 2143361438),
            id="name-glued-to-counter",
        ),
    ],
)
def test_parse_net_stat(text: str, expected: NetStat) -> None:
    assert parse_net_stat(text) == expected


@pytest.fixture
def proc_root(tmp_path: Path) -> Path:
    (tmp_path / "net").mkdir()
    (tmp_path / "loadavg").write_text("0.54 0.56 0.55 1/1006 176235\n")
    (tmp_path / "stat").write_text(PROC_STAT)
    (tmp_path / "diskstats").write_text(NVME_DISKSTATS)
    (tmp_path / "net" / "dev").write_text(
        NET_DEV_HEADER + "  eth0: 1000 10 0 0 0 0 0 0 2000 20 0 0 0 0 0 0\n"
        "    lo: 5000 10 0 0 0 0 0 0 5000 10 0 0 0 0 0 0\n"
    )
    return tmp_path


def test_procfs_platform(proc_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    outputs = {"free": FREE_OUTPUT, "df": DF_OUTPUT}

    def fake_run_process(cmd: List[str]) -> "CompletedProcess[str]":
        return CompletedProcess(cmd, 0, outputs[cmd[0]], "")

    monkeypatch.setattr(procfs, "run_process", fake_run_process)
    platform = ProcfsPlatform(str(proc_root))

    assert platform.load_average() == (0.54, 0.56, 0.55)
    assert platform.disk_bytes() == (49778168 * 512, 34542122 * 512)
    assert platform.net_bytes() == (1000, 2000)
    assert round(platform.mem_percent()) == 18
    assert round(platform.disk_percent()) == 24

    # the first reading has nothing to compare against
    assert platform.cpu_percent() == 0.0
    (proc_root / "stat").write_text("cpu  1100 0 0 1075 0 0 0 0 0 0\n")
    # total 17446939 -> 2175, idle 16649013 -> 1075: the counters went backwards
    assert platform.cpu_percent() == 0.0
    (proc_root / "stat").write_text("cpu  1150 0 0 1125 0 0 0 0 0 0\n")
    assert platform.cpu_percent() == 50.0


def test_procfs_platform_missing_file(tmp_path: Path) -> None:
    platform = ProcfsPlatform(str(tmp_path))
    with pytest.raises(FileNotFoundError):
        platform.load_average()
