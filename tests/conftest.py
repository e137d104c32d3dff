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
from typing import Iterator

from pytest import fixture

from moni.sampler import Sampler
from moni.state import reset_state
from tests.utils import FakePlatform


@fixture(autouse=True)
def clean_state() -> Iterator[None]:
    """
    The run state is process-wide; make sure every test starts (and ends) without one.
    """
    reset_state()
    yield
    reset_state()


@fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


@fixture
def sampler(fake_platform: FakePlatform) -> Sampler:
    return Sampler(fake_platform)
