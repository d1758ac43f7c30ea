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

SEP = '/'


def join(*parts) -> str:
    return SEP.join(str(p).strip(SEP) for p in parts if str(p).strip(SEP))


def is_under(key: str, prefix: str) -> bool:
    r'''
    Returns :py:obj:`True` if ``key`` equals ``prefix`` or lives below it.
    ``barrier/b1`` contains ``barrier/b1/count`` but not ``barrier/b10``.
    '''
    prefix = prefix.rstrip(SEP)
    if not prefix:
        return True
    return key == prefix or key.startswith(prefix + SEP)


class MessageKind(enum.Enum):
    INT = 'int_data'
    BYTES = 'char_data'


class KeyNamespace:
    r'''
    Maps coordination state to store keys below a single run-scoped prefix.

    Layout::

        lock
        size
        rank/<r>
        <op>+<int_data|char_data>/src=<s>/dst=<d>[/data][/ack]
        barrier/<id>/count
        barrier/<id>/ready
        barrier/<id>/proc-<r>
        bcast/int/<root>
        reduce/<id>/rank-<r>
    '''

    LOCK = 'lock'
    SIZE = 'size'
    RANK = 'rank'
    BARRIER = 'barrier'
    BCAST_INT = 'bcast/int'
    REDUCE = 'reduce'

    MSG_DATA = 'data'
    MSG_ACK = 'ack'

    BARRIER_COUNT = 'count'
    BARRIER_READY = 'ready'
    BARRIER_PROC = 'proc-{rank}'
    REDUCE_RANK = 'rank-{rank}'

    def __init__(self, prefix: str = 'xferbench'):
        prefix = prefix.strip(SEP)
        if not prefix:
            raise ValueError('namespace prefix must not be empty')
        self.prefix = prefix

    def __repr__(self):
        return f'{type(self).__name__}({self.prefix!r})'

    def key(self, *parts) -> str:
        return join(self.prefix, *parts)

    # membership

    def lock(self) -> str:
        return self.key(self.LOCK)

    def size(self) -> str:
        return self.key(self.SIZE)

    def rank(self, rank: int) -> str:
        return self.key(self.RANK, rank)

    # point-to-point

    def message(self, operation: str, src: int, dst: int, kind: MessageKind) -> str:
        return self.key(f'{operation}+{kind.value}', f'src={src}', f'dst={dst}')

    def message_data(self, operation: str, src: int, dst: int, kind: MessageKind) -> str:
        return join(self.message(operation, src, dst, kind), self.MSG_DATA)

    def message_ack(self, operation: str, src: int, dst: int, kind: MessageKind) -> str:
        return join(self.message(operation, src, dst, kind), self.MSG_ACK)

    # barrier

    def barrier_root(self) -> str:
        return self.key(self.BARRIER)

    def barrier(self, barrier_id: str) -> str:
        if not barrier_id or SEP in barrier_id:
            raise ValueError(f'{barrier_id=} must be a non-empty name without {SEP!r}')
        return self.key(self.BARRIER, barrier_id)

    def barrier_count(self, barrier_id: str) -> str:
        return join(self.barrier(barrier_id), self.BARRIER_COUNT)

    def barrier_ready(self, barrier_id: str) -> str:
        return join(self.barrier(barrier_id), self.BARRIER_READY)

    def barrier_proc(self, barrier_id: str, rank: int) -> str:
        return join(self.barrier(barrier_id), self.BARRIER_PROC.format(rank=rank))

    # broadcast

    def bcast_int(self, root: int) -> str:
        return self.key(self.BCAST_INT, root)

    # reduction

    def reduce(self, reduce_id: str) -> str:
        reduce_id = str(reduce_id)
        if not reduce_id or SEP in reduce_id:
            raise ValueError(f'{reduce_id=} must be a non-empty name without {SEP!r}')
        return self.key(self.REDUCE, reduce_id)

    def reduce_rank(self, reduce_id: str, rank: int) -> str:
        return join(self.reduce(reduce_id), self.REDUCE_RANK.format(rank=rank))
