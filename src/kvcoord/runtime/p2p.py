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

"""
Point-to-point control messages over the shared store.

A message for ``(operation, src, dst, kind)`` is written under its envelope
key; the receiver acknowledges it by writing ``received`` to ``<envelope>/ack``
and deletes the payload, the sender deletes the ack. Only one message per
envelope may be in flight at a time.
"""

import logging
from typing import Optional, Union

from ..shared_utils.log import LogConfig
from .context import RuntimeContext
from .exception import CoordinationTimeout, PayloadError
from .keys import MessageKind
from .retry import poll

log = logging.getLogger(LogConfig.name)

ACK = 'received'
DEFAULT_OPERATION = 'msg'

Buffer = Union[bytearray, memoryview]


def _wait_for_ack(ctx: RuntimeContext, ack_key: str, dest: int, kind: MessageKind):
    def ack_received():
        return True if ctx.store.get_str(ack_key) == ACK else None

    try:
        poll(ack_received, ctx.config.p2p_policy, f'ack {ack_key!r}', ctx.clock)
    except CoordinationTimeout as ex:
        log.error(f'Timeout waiting for {kind.value} acknowledgment from rank {dest}')
        raise CoordinationTimeout(
            f'rank {ctx.rank}: no {kind.value} acknowledgment from rank {dest}'
        ) from ex
    ctx.store.delete(ack_key)


def _acknowledge(ctx: RuntimeContext, ack_key: str, *payload_keys: str):
    ctx.store.put(ack_key, ACK)
    # let the sender observe the ack before the payload disappears
    ctx.clock.sleep(ctx.config.recv_settle_delay)
    for key in payload_keys:
        ctx.store.delete(key)


def send_int(ctx: RuntimeContext, value: int, dest: int, operation: str = DEFAULT_OPERATION):
    r'''
    Sends ``value`` to rank ``dest`` and blocks until it was acknowledged.

    Raises:
        CoordinationTimeout: no acknowledgment within the retry budget; the
            payload is left in the store
    '''
    ctx.check_peer(dest)
    kind = MessageKind.INT
    msg_key = ctx.keys.message(operation, ctx.rank, dest, kind)

    ctx.store.put(msg_key, str(int(value)))
    _wait_for_ack(ctx, ctx.keys.message_ack(operation, ctx.rank, dest, kind), dest, kind)
    log.debug(f'rank {ctx.rank} sent int to rank {dest}')


def recv_int(ctx: RuntimeContext, src: int, operation: str = DEFAULT_OPERATION) -> int:
    r'''
    Blocks until an integer from rank ``src`` arrives and returns it.

    Raises:
        CoordinationTimeout: nothing arrived within the retry budget
        PayloadError: the payload is not a decimal integer
    '''
    ctx.check_peer(src)
    kind = MessageKind.INT
    msg_key = ctx.keys.message(operation, src, ctx.rank, kind)

    try:
        raw = poll(lambda: ctx.store.get_str(msg_key), ctx.config.p2p_policy, msg_key, ctx.clock)
    except CoordinationTimeout as ex:
        log.error(f'Timeout waiting for int data from rank {src}')
        raise CoordinationTimeout(f'rank {ctx.rank}: no int data from rank {src}') from ex

    try:
        value = int(raw)
    except ValueError as ex:
        raise PayloadError(f'Error converting value {raw!r} from rank {src} to integer') from ex

    _acknowledge(ctx, ctx.keys.message_ack(operation, src, ctx.rank, kind), msg_key)
    return value


def send_bytes(ctx: RuntimeContext, data: bytes, dest: int, operation: str = DEFAULT_OPERATION):
    r'''
    Sends raw ``data`` to rank ``dest`` and blocks until it was acknowledged.

    The bytes are written to ``<envelope>/data`` before the envelope itself
    (``src:dst:length``), so a receiver that observes the envelope always
    finds the complete data.
    '''
    ctx.check_peer(dest)
    kind = MessageKind.BYTES
    data = bytes(data)
    msg_key = ctx.keys.message(operation, ctx.rank, dest, kind)

    ctx.store.put(ctx.keys.message_data(operation, ctx.rank, dest, kind), data)
    ctx.store.put(msg_key, f'{ctx.rank}:{dest}:{len(data)}')
    _wait_for_ack(ctx, ctx.keys.message_ack(operation, ctx.rank, dest, kind), dest, kind)
    log.debug(f'rank {ctx.rank} sent {len(data)} bytes to rank {dest}')


def _parse_meta(meta: str, src: int, dst: int) -> int:
    try:
        meta_src, meta_dst, length = (int(field) for field in meta.split(':'))
    except ValueError as ex:
        raise PayloadError(f'malformed message metadata {meta!r} from rank {src}') from ex
    if (meta_src, meta_dst) != (src, dst) or length < 0:
        raise PayloadError(f'unexpected message metadata {meta!r} for {src=} {dst=}')
    return length


def recv_bytes(
    ctx: RuntimeContext,
    src: int,
    buffer: Optional[Buffer] = None,
    operation: str = DEFAULT_OPERATION,
) -> bytes:
    r'''
    Blocks until bytes from rank ``src`` arrive.

    If ``buffer`` is given, at most ``len(buffer)`` bytes are copied into it;
    a longer message is truncated silently. Returns the bytes that were
    delivered (truncated the same way).

    Raises:
        CoordinationTimeout: nothing arrived within the retry budget
        PayloadError: the metadata is malformed or disagrees with the data
    '''
    ctx.check_peer(src)
    kind = MessageKind.BYTES
    msg_key = ctx.keys.message(operation, src, ctx.rank, kind)
    data_key = ctx.keys.message_data(operation, src, ctx.rank, kind)

    def message_arrived():
        meta = ctx.store.get_str(msg_key)
        if meta is None:
            return None
        data = ctx.store.get(data_key)
        if data is None:
            return None
        return meta, data

    try:
        meta, data = poll(message_arrived, ctx.config.p2p_policy, msg_key, ctx.clock)
    except CoordinationTimeout as ex:
        log.error(f'Timeout waiting for char data from rank {src}')
        raise CoordinationTimeout(f'rank {ctx.rank}: no char data from rank {src}') from ex

    length = _parse_meta(meta, src, ctx.rank)
    if length != len(data):
        raise PayloadError(f'rank {src} announced {length} bytes, store holds {len(data)}')

    if buffer is not None:
        copy_size = min(len(data), len(buffer))
        buffer[:copy_size] = data[:copy_size]
        data = data[:copy_size]

    _acknowledge(ctx, ctx.keys.message_ack(operation, src, ctx.rank, kind), data_key, msg_key)
    return data
