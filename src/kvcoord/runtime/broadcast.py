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
from typing import MutableSequence, Optional

import numpy as np

from ..shared_utils.log import LogConfig
from .barrier import barrier
from .context import RuntimeContext
from .exception import CoordinationTimeout
from .retry import poll

log = logging.getLogger(LogConfig.name)

# fixed-width wire format of one broadcast element
INT_DTYPE = np.dtype('<i4')


def encode_ints(values, count: int) -> bytes:
    array = np.asarray(values[:count], dtype=INT_DTYPE)
    if array.size != count:
        raise ValueError(f'buffer holds {array.size} values, {count=} requested')
    return array.tobytes()


def decode_ints(data: bytes, count: int) -> np.ndarray:
    return np.frombuffer(data, dtype=INT_DTYPE, count=count).copy()


def broadcast_int(
    ctx: RuntimeContext,
    buffer: MutableSequence[int],
    root: int,
    count: Optional[int] = None,
) -> np.ndarray:
    r'''
    Broadcasts the first ``count`` integers of ``buffer`` from rank ``root``.

    On non-root ranks the received values are copied into ``buffer[:count]``
    in place (``buffer`` may be a list or a :py:class:`numpy.ndarray`). Every
    rank returns the broadcast values as an ``int32`` array.

    The slot is written before the ``_write`` barrier and deleted by the root
    only after the ``_read`` barrier, so readers never see a partial slot and
    the slot outlives every read.

    Raises:
        CoordinationTimeout: a non-root rank did not observe the full slot
        BarrierTimeout: one of the two barriers timed out
    '''
    ctx.check_peer(root)
    count = len(buffer) if count is None else count
    if count < 0 or count > len(buffer):
        raise ValueError(f'{count=} does not fit a buffer of {len(buffer)} values')

    bcast_key = ctx.keys.bcast_int(root)
    barrier_id = f'bcast_int_{root}'
    nbytes = count * INT_DTYPE.itemsize

    if ctx.rank == root:
        ctx.store.put(bcast_key, encode_ints(buffer, count))

    barrier(ctx, f'{barrier_id}_write')

    if ctx.rank == root:
        values = np.asarray(buffer[:count], dtype=INT_DTYPE)
    else:

        def slot_complete():
            data = ctx.store.get(bcast_key)
            if data is None:
                return None
            if len(data) < nbytes:
                log.warning(
                    f'Received data size ({len(data)}) is smaller than expected ({nbytes})'
                )
                return None
            return data

        try:
            data = poll(slot_complete, ctx.config.bcast_policy, bcast_key, ctx.clock)
        except CoordinationTimeout as ex:
            log.error(f'Failed to read broadcast data from rank {root}')
            raise CoordinationTimeout(
                f'rank {ctx.rank}: no broadcast data from rank {root}'
            ) from ex

        values = decode_ints(data, count)
        buffer[:count] = values.tolist() if isinstance(buffer, list) else values

    barrier(ctx, f'{barrier_id}_read')

    if ctx.rank == root:
        ctx.store.delete(bcast_key)

    return values
