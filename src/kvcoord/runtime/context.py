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

import collections
import dataclasses

from .config import CoordinationConfig
from .keys import KeyNamespace
from .retry import SYSTEM_CLOCK, Clock
from .store import KVStore


@dataclasses.dataclass
class RuntimeContext:
    r'''
    Per-process state shared by the coordination primitives.

    Owned by one :py:class:`kvcoord.runtime.Runtime` and passed by reference
    into every primitive; nothing here is global.

    Args:
        store: connected store facade
        keys: key namespace of the run
        rank: rank assigned at registration
        size: expected group size
        config: timeouts and retry budgets
        clock: time source of every polling loop
    '''

    store: KVStore
    keys: KeyNamespace
    rank: int
    size: int
    config: CoordinationConfig = dataclasses.field(default_factory=CoordinationConfig)
    clock: Clock = SYSTEM_CLOCK

    barrier_generations: collections.Counter = dataclasses.field(
        default_factory=collections.Counter
    )
    reduce_sequence: int = 0

    def __post_init__(self):
        if self.size < 1:
            raise ValueError(f'{self.size=} must be positive')

    @property
    def is_owner(self) -> bool:
        return self.rank == 0

    def check_peer(self, rank: int):
        if not 0 <= rank < self.size:
            raise ValueError(f'{rank=} out of range for group of {self.size=}')

    def barrier_generation(self, barrier_id: str) -> int:
        return self.barrier_generations[barrier_id]

    def complete_barrier_generation(self, barrier_id: str):
        self.barrier_generations[barrier_id] += 1

    def next_reduce_id(self) -> str:
        reduce_id = f'r{self.reduce_sequence}'
        self.reduce_sequence += 1
        return reduce_id
