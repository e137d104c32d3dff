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
import logging
import logging.handlers
import os
import re
import sys
import time
from logging import LogRecord
from typing import Any, Mapping, MutableMapping, Optional, Tuple

from moni.state import get_state

RUN_ID_KEY = "run_id"
CYCLE_ID_KEY = "cycle_id"
LOGGER_NAME_RE = re.compile(r"moni(?:\..+)?")


def get_logger_adapter(logger_name: str) -> logging.LoggerAdapter:
    # Validate the name starts with moni (the root logger name), so logging parent logger propagation will work.
    assert LOGGER_NAME_RE.match(logger_name) is not None, "logger name must start with 'moni'"
    return MoniExtraAdapter(logging.getLogger(logger_name))


class MoniExtraAdapter(logging.LoggerAdapter):
    """
    LoggerAdapter that accepts arbitrary keyword arguments in the log calls, and attaches them to the record as
    the "extra" dict, e.g logger.info("Sample posted", machine_id=machine_id).
    """

    # keyword arguments understood by Logger._log itself
    LOGGING_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def get_extra(self, **kwargs: Any) -> Mapping[str, Any]:
        assert RUN_ID_KEY not in kwargs and CYCLE_ID_KEY not in kwargs
        state = get_state()
        if state is None:
            return kwargs
        # run_id is fixed for the lifetime of moni, cycle_id changes on every sampling tick.
        extra = {**kwargs, RUN_ID_KEY: state.run_id}
        if state.cycle_id is not None:
            extra[CYCLE_ID_KEY] = state.cycle_id
        return extra

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        fields = {key: kwargs.pop(key) for key in list(kwargs) if key not in self.LOGGING_KWARGS}
        fields.update(kwargs.pop("extra", None) or {})
        kwargs["extra"] = {"extra": self.get_extra(**fields)}
        return msg, kwargs


class _ExtraFormatter(logging.Formatter):
    FILTERED_EXTRA_KEYS = [RUN_ID_KEY, CYCLE_ID_KEY]  # don't print those fields locally

    def format(self, record: LogRecord) -> str:
        formatted = super().format(record)

        formatted_extra = ", ".join(
            f"{k}={v}" for k, v in record.__dict__.get("extra", {}).items() if k not in self.FILTERED_EXTRA_KEYS
        )
        if formatted_extra:
            formatted = f"{formatted} ({formatted_extra})"

        return formatted


class _UTCFormatter(logging.Formatter):
    # Patch formatTime to be GMT (UTC) for all formatters,
    # see https://docs.python.org/3/library/logging.html?highlight=formattime#logging.Formatter.formatTime
    converter = time.gmtime


class MoniFormatter(_ExtraFormatter, _UTCFormatter):
    pass


def initial_root_logger_setup(
    stream_level: int,
    log_file_path: Optional[str],
    rotate_max_bytes: int,
    rotate_backup_count: int,
) -> logging.LoggerAdapter:
    logger_adapter = get_logger_adapter("moni")
    logger_adapter.setLevel(logging.DEBUG)

    stream_handler = logging.StreamHandler(stream=sys.stdout)
    stream_handler.setLevel(stream_level)
    if stream_level < logging.INFO:
        stream_handler.setFormatter(MoniFormatter("[%(asctime)s] %(levelname)s: %(name)s: %(message)s"))
    else:
        stream_handler.setFormatter(MoniFormatter("[%(asctime)s] %(message)s", "%H:%M:%S"))
    logger_adapter.logger.addHandler(stream_handler)

    if log_file_path is not None:
        os.makedirs(os.path.dirname(os.path.abspath(log_file_path)), exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path,
            maxBytes=rotate_max_bytes,
            backupCount=rotate_backup_count,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(MoniFormatter("[%(asctime)s] %(levelname)s: %(name)s: %(message)s"))
        logger_adapter.logger.addHandler(file_handler)

    return logger_adapter
