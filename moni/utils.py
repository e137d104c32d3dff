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
import os
import shutil
import subprocess
from subprocess import CompletedProcess
from typing import Any, List, Union

from moni.exceptions import CalledProcessError, CalledProcessTimeoutError, ProgramMissingException
from moni.log import get_logger_adapter

logger = get_logger_adapter(__name__)

DEFAULT_PROCESS_TIMEOUT = 10


def run_process(
    cmd: Union[str, List[str]],
    *,
    check: bool = True,
    timeout: float = DEFAULT_PROCESS_TIMEOUT,
    **kwargs: Any,
) -> "CompletedProcess[str]":
    program = cmd if isinstance(cmd, str) else cmd[0]
    if shutil.which(program) is None:
        raise ProgramMissingException(program)

    logger.debug("Running command", command=cmd)

    # force a stable output format (e.g "free" and "df" headers are localized)
    env = kwargs.pop("env", None) or {**os.environ, "LC_ALL": "C"}
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=env, **kwargs)
    except subprocess.TimeoutExpired as e:
        raise CalledProcessTimeoutError(
            timeout, -1, cmd, _decode_output(e.stdout), _decode_output(e.stderr)
        ) from None

    if check and result.returncode != 0:
        raise CalledProcessError(result.returncode, cmd, result.stdout, result.stderr)
    return result


def _decode_output(output: Union[bytes, str, None]) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def mask_secret(secret: str, visible: int = 4) -> str:
    if len(secret) <= visible:
        return "*" * len(secret)
    return secret[:visible] + "*" * (len(secret) - visible)
