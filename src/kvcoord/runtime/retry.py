# SPDX-FileCopyrightText: NVIDIA CORPORATION & AFFILIATES
# Copyright (c) 2024 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import dataclasses
import enum
import logging
import time
from typing import Callable, Optional, TypeVar

from ..shared_utils.log import LogConfig
from .exception import CoordinationTimeout

log = logging.getLogger(LogConfig.name)

T = TypeVar('T')


class Clock:
    r'''
    Time source used by every polling loop. Tests substitute a clock that
    records requested sleeps instead of blocking.
    '''

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float):
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK = Clock()


class PollState(enum.Enum):
    r'''
    State of a :py:class:`Poller`.

    Attributes:
        WAITING: the condition was not observed yet, attempts remain
        READY: the condition was observed
        TIMED_OUT: all attempts were used without observing the condition
    '''

    WAITING = enum.auto()
    READY = enum.auto()
    TIMED_OUT = enum.auto()


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    r'''
    Fixed-count, fixed-interval retry budget.

    Args:
        max_attempts: number of times the condition is evaluated
        interval: delay (in seconds) between two consecutive attempts
    '''

    max_attempts: int
    interval: float

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f'{self.max_attempts=} must be positive')
        if self.interval < 0:
            raise ValueError(f'{self.interval=} must not be negative')

    @property
    def budget(self) -> float:
        return self.max_attempts * self.interval


class Poller:
    r'''
    Bounded retry state machine.

    ``attempt`` is called until it returns a value other than :py:obj:`None`
    or until ``policy.max_attempts`` calls were made. There is no backoff and
    no external cancellation; a poll ends only by success or by exhausting its
    own budget.

    Exceptions raised by ``attempt`` are not retried, they propagate to the
    caller unchanged.
    '''

    def __init__(self, policy: RetryPolicy, clock: Optional[Clock] = None):
        self.policy = policy
        self.clock = clock if clock is not None else SYSTEM_CLOCK
        self.state = PollState.WAITING
        self.attempts = 0

    def step(self, attempt: Callable[[], Optional[T]]) -> Optional[T]:
        if self.state is not PollState.WAITING:
            raise RuntimeError(f'{self.state=} poller is finished')

        self.attempts += 1
        value = attempt()
        if value is not None:
            self.state = PollState.READY
        elif self.attempts >= self.policy.max_attempts:
            self.state = PollState.TIMED_OUT
        return value

    def run(self, attempt: Callable[[], Optional[T]], what: str) -> T:
        while True:
            value = self.step(attempt)
            if self.state is PollState.READY:
                return value
            if self.state is PollState.TIMED_OUT:
                log.debug(f'gave up waiting for {what} after {self.attempts} attempts')
                raise CoordinationTimeout(
                    f'timed out waiting for {what} '
                    f'({self.attempts} attempts, {self.policy.interval}s interval)'
                )
            self.clock.sleep(self.policy.interval)


def poll(
    attempt: Callable[[], Optional[T]],
    policy: RetryPolicy,
    what: str,
    clock: Optional[Clock] = None,
) -> T:
    return Poller(policy, clock).run(attempt, what)
