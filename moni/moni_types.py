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
from typing import Callable

import configargparse
import humanfriendly


def integer_range(min_value: int, max_value: int) -> Callable[[str], int]:
    def integer_range_check(value_str: str) -> int:
        try:
            value = int(value_str)
        except ValueError:
            raise configargparse.ArgumentTypeError(f"invalid integer value: {value_str!r}")
        if value < min_value or value > max_value:
            raise configargparse.ArgumentTypeError(
                f"invalid integer value {value!r} (out of range {min_value!r}-{max_value!r})"
            )
        return value

    return integer_range_check


def timespan_range(min_seconds: float, max_seconds: float) -> Callable[[str], float]:
    """
    Parses human friendly durations ("5s", "5m", "1h", or plain seconds) and checks they're in range.
    """

    def timespan_range_check(value_str: str) -> float:
        try:
            value = humanfriendly.parse_timespan(value_str)
        except humanfriendly.InvalidTimespan as e:
            raise configargparse.ArgumentTypeError(str(e))
        if value < min_seconds:
            raise configargparse.ArgumentTypeError(
                f"invalid duration {value_str!r}, must be >= {humanfriendly.format_timespan(min_seconds)}"
            )
        if value > max_seconds:
            raise configargparse.ArgumentTypeError(
                f"invalid duration {value_str!r}, must be <= {humanfriendly.format_timespan(max_seconds)}"
            )
        return value

    return timespan_range_check


def non_empty_string(value_str: str) -> str:
    if not value_str.strip():
        raise configargparse.ArgumentTypeError("value must not be empty")
    return value_str
