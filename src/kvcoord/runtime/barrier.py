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

import enum
import logging

from ..shared_utils.log import LogConfig
from .context import RuntimeContext
from .exception import BarrierOverflow, BarrierTimeout, CoordinationTimeout, PayloadError
from .retry import poll

log = logging.getLogger(LogConfig.name)

ARRIVED = 'arrived'
READY = 'true'


class BarrierState(enum.Enum):
    r'''
    Progress of one participant through a barrier.

    Attributes:
        ARRIVING: arrival marker written, counter not yet incremented
        COUNTED: counter incremented, waiting for all arrivals
        READY_WAIT: all arrived, waiting for the ready flag
        DONE: barrier released this participant
    '''

    ARRIVING = enum.auto()
    COUNTED = enum.auto()
    READY_WAIT = enum.auto()
    DONE = enum.auto()


def generation_id(barrier_id: str, generation: int) -> str:
    return barrier_id if generation == 0 else f'{barrier_id}#{generation}'


def _withdraw(ctx: RuntimeContext, count_key: str, process_key: str):
    # a peer arriving before the decrement may still be released by this arrival
    ctx.store.add(count_key, -1)
    ctx.store.delete(process_key)


def barrier(ctx: RuntimeContext, barrier_id: str):
    r'''
    Blocks until all ``ctx.size`` participants entered the barrier
    ``barrier_id``.

    Arrivals are counted with the store's atomic increment. The participant
    whose increment brings the counter to exactly the group size raises the
    ``ready`` flag; everyone then waits for the counter and for the flag. Rank
    0 deletes the barrier keys after ``barrier_cleanup_grace`` seconds.

    Entering the same ``barrier_id`` again after every participant arrived
    starts a new generation with its own keys. A participant that times out
    before everyone arrived withdraws its arrival and stays on the same
    generation, so the caller may retry the barrier.

    Raises:
        BarrierTimeout: the counter or the ready flag were not observed within
            their retry budgets
        BarrierOverflow: more participants arrived than the group size
    '''
    generation = ctx.barrier_generation(barrier_id)
    effective_id = generation_id(barrier_id, generation)
    keys = ctx.keys
    barrier_key = keys.barrier(effective_id)
    count_key = keys.barrier_count(effective_id)
    ready_key = keys.barrier_ready(effective_id)
    process_key = keys.barrier_proc(effective_id, ctx.rank)
    expected_count = ctx.size

    state = BarrierState.ARRIVING
    log.debug(f'rank {ctx.rank} enter barrier {effective_id!r} {state=}')
    ctx.store.put(process_key, ARRIVED)

    arrived_count = ctx.store.add(count_key, 1)
    state = BarrierState.COUNTED
    if arrived_count > expected_count:
        _withdraw(ctx, count_key, process_key)
        raise BarrierOverflow(f'rank {ctx.rank} {effective_id=} {arrived_count=} {expected_count=}')
    if arrived_count == expected_count:
        ctx.store.put(ready_key, READY)

    observed = arrived_count

    def all_arrived():
        nonlocal observed
        count = ctx.store.get_str(count_key)
        if count is not None:
            try:
                observed = int(count)
            except ValueError as ex:
                raise PayloadError(f'malformed barrier counter {count!r}') from ex
        return True if observed >= expected_count else None

    try:
        poll(all_arrived, ctx.config.barrier_count_policy, f'barrier {effective_id!r}', ctx.clock)
    except CoordinationTimeout as ex:
        log.error(
            f'Rank {ctx.rank} timed out waiting for barrier {effective_id} completion '
            f'(got {observed}/{expected_count} processes)'
        )
        _withdraw(ctx, count_key, process_key)
        raise BarrierTimeout(
            f'rank {ctx.rank} {effective_id=} got {observed}/{expected_count} processes'
        ) from ex

    ctx.complete_barrier_generation(barrier_id)
    state = BarrierState.READY_WAIT

    def ready():
        return True if ctx.store.get_str(ready_key) == READY else None

    try:
        poll(ready, ctx.config.barrier_ready_policy, f'ready {effective_id!r}', ctx.clock)
    except CoordinationTimeout as ex:
        log.error(f'Rank {ctx.rank} timed out waiting for barrier {effective_id} ready signal')
        raise BarrierTimeout(f'rank {ctx.rank} {effective_id=} no ready signal') from ex

    ctx.store.delete(process_key)
    state = BarrierState.DONE
    log.debug(f'rank {ctx.rank} exits barrier {effective_id!r} {state=}')

    if ctx.is_owner:
        # slower participants may still be reading the ready flag
        ctx.clock.sleep(ctx.config.barrier_cleanup_grace)
        ctx.store.delete_recursive(barrier_key)
