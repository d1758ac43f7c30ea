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

import logging
from typing import Optional

from ..shared_utils.log import LogConfig
from .context import RuntimeContext
from .exception import CoordinationTimeout, PayloadError
from .retry import Poller, PollState

log = logging.getLogger(LogConfig.name)


def encode_double(value: float) -> str:
    return f'{value:.16f}'


def decode_double(text: str) -> float:
    try:
        return float(text)
    except ValueError as ex:
        raise PayloadError(f'malformed reduction contribution {text!r}') from ex


def reduce_sum(
    ctx: RuntimeContext,
    value: float,
    dest: int,
    reduce_id: Optional[str] = None,
) -> Optional[float]:
    r'''
    Sums ``value`` over all ranks on rank ``dest``.

    Every rank writes its contribution under ``reduce/<id>/rank-<rank>``.
    Non-destination ranks return :py:obj:`None` right away. The destination
    lists the context, folds in and deletes every foreign contribution, and
    repeats until ``size - 1`` were consumed; it always deletes the context
    afterwards.

    ``reduce_id`` must be identical on all ranks. When omitted, the next value
    of the per-process reduction sequence is used, which matches across ranks
    as long as every rank takes part in every reduction.

    Raises:
        CoordinationTimeout: the destination did not collect every contribution
            within ``reduce_max_rounds`` listing rounds
        PayloadError: a contribution is not a decimal number
    '''
    ctx.check_peer(dest)
    reduce_id = ctx.next_reduce_id() if reduce_id is None else str(reduce_id)
    reduce_key = ctx.keys.reduce(reduce_id)
    value_key = ctx.keys.reduce_rank(reduce_id, ctx.rank)

    ctx.store.put(value_key, encode_double(value))

    if ctx.rank != dest:
        return None

    global_value = float(value)
    expected = ctx.size - 1
    consumed = set()

    def collect():
        nonlocal global_value
        for key in sorted(ctx.store.list_prefix(reduce_key)):
            if key == value_key or key in consumed:
                continue
            contribution = ctx.store.get_str(key)
            if contribution is None:
                continue
            global_value += decode_double(contribution)
            ctx.store.delete(key)
            consumed.add(key)
        return True if len(consumed) >= expected else None

    poller = Poller(ctx.config.reduce_policy, ctx.clock)
    try:
        while poller.state is PollState.WAITING:
            poller.step(collect)
            if poller.state is PollState.WAITING:
                ctx.clock.sleep(poller.policy.interval)
    finally:
        ctx.store.delete_recursive(reduce_key)

    if poller.state is PollState.TIMED_OUT:
        log.error(
            f'Timeout waiting for reduction contributions '
            f'(got {len(consumed)}/{expected} contributions)'
        )
        raise CoordinationTimeout(
            f'rank {ctx.rank} {reduce_id=} got {len(consumed)}/{expected} contributions'
        )

    return global_value
