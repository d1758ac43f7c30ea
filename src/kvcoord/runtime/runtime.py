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

import functools
import logging
from typing import MutableSequence, Optional

from ..shared_utils.log import LogConfig
from . import barrier as barrier_mod
from . import broadcast as broadcast_mod
from . import p2p
from . import reduce as reduce_mod
from .config import CoordinationConfig
from .context import RuntimeContext
from .exception import CoordinationError, FatalCoordinationError, RegistrationError
from .keys import KeyNamespace
from .membership import Registrar
from .result import Result
from .retry import SYSTEM_CLOCK, Clock
from .store import KVStore

log = logging.getLogger(LogConfig.name)

FINAL_BARRIER = 'finalize'


def _primitive(fn):
    r'''
    Runs a coordination primitive and converts its outcome into a
    :py:class:`Result`. Any :py:exc:`CoordinationError` is logged and turned
    into a failed result; it never propagates to the caller.
    '''

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        if self._closed:
            raise RuntimeError(f'{type(self).__name__} is closed')
        try:
            return Result.success(fn(self, *args, **kwargs))
        except CoordinationError as ex:
            log.error(f'Rank {self.rank}: error in {fn.__name__}: {ex}')
            return Result.failure(ex)

    return wrapper


class Runtime:
    r'''
    Group-coordination runtime of one benchmark process.

    Construction connects to the store and blocks until this process is
    registered and holds a unique rank. All primitives are synchronous and
    return a :py:class:`Result`.

    Use as a context manager, or call :py:meth:`close` explicitly, so that the
    registration record is removed and rank 0 purges the run's namespace.

    Example::

        with Runtime(size=2, endpoint='tcp://store-host:29500') as rt:
            if rt.rank == 0:
                rt.send_int(42, dest=1)
            else:
                value = rt.recv_int(src=0).value
            rt.barrier('done')

    Args:
        size: number of processes taking part in the run
        endpoint: store endpoint, overrides ``config.store_endpoint``
        config: timeouts, retry budgets and namespace
        store: already connected store facade, skips connecting
        clock: time source of every polling loop

    Raises:
        StoreConnectionError: the store could not be reached
        RegistrationError: no rank could be assigned
    '''

    def __init__(
        self,
        size: int,
        endpoint: Optional[str] = None,
        config: Optional[CoordinationConfig] = None,
        store: Optional[KVStore] = None,
        clock: Optional[Clock] = None,
    ):
        if size < 1:
            raise ValueError(f'{size=} must be positive')

        self.config = config if config is not None else CoordinationConfig.from_env()
        clock = clock if clock is not None else SYSTEM_CLOCK
        self._closed = False
        log.setLevel(self.config.log_level)

        if store is None:
            store = KVStore.connect(
                endpoint or self.config.store_endpoint,
                namespace=self.config.namespace,
                timeout=self.config.store_timeout,
                clock=clock,
            )
        keys = KeyNamespace(store.namespace)
        self.registrar = Registrar(store, keys, lock_timeout=self.config.lock_timeout)

        try:
            rank = self.registrar.register()
        except FatalCoordinationError:
            raise
        except CoordinationError as ex:
            raise RegistrationError(f'Failed to register: {ex}') from ex

        self.ctx = RuntimeContext(
            store=store,
            keys=keys,
            rank=rank,
            size=size,
            config=self.config,
            clock=clock,
        )
        log.info(f'Registered as rank {rank} item {rank + 1} of {size}')

    @property
    def rank(self) -> int:
        return self.ctx.rank

    @property
    def size(self) -> int:
        return self.ctx.size

    def get_rank(self) -> int:
        return self.rank

    def get_size(self) -> int:
        return self.size

    @_primitive
    def send_int(self, value: int, dest: int) -> None:
        p2p.send_int(self.ctx, value, dest)

    @_primitive
    def recv_int(self, src: int) -> int:
        return p2p.recv_int(self.ctx, src)

    @_primitive
    def send_bytes(self, data: bytes, dest: int) -> None:
        p2p.send_bytes(self.ctx, data, dest)

    @_primitive
    def recv_bytes(self, src: int, buffer=None) -> bytes:
        return p2p.recv_bytes(self.ctx, src, buffer)

    @_primitive
    def barrier(self, barrier_id: str) -> None:
        barrier_mod.barrier(self.ctx, barrier_id)

    @_primitive
    def broadcast_int(self, buffer: MutableSequence[int], root: int, count: Optional[int] = None):
        return broadcast_mod.broadcast_int(self.ctx, buffer, root, count)

    @_primitive
    def reduce_sum(self, value: float, dest: int, reduce_id: Optional[str] = None):
        return reduce_mod.reduce_sum(self.ctx, value, dest, reduce_id)

    def close(self):
        r'''
        Leaves the group.

        With ``config.final_barrier`` every rank first waits for all others, so
        rank 0 never erases state a peer still uses. If that barrier fails,
        cleanup still runs and a warning is logged. Safe to call more than once.
        '''
        if self._closed:
            return

        if self.config.final_barrier and self.size > 1:
            result = self.barrier(FINAL_BARRIER)
            if not result:
                log.warning(f'Rank {self.rank}: final barrier failed, cleaning up anyway')

        self._closed = True
        try:
            self.registrar.deregister(self.rank, is_owner=self.ctx.is_owner)
        except CoordinationError as ex:
            log.warning(f'Rank {self.rank}: cleanup failed: {ex}')

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
