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

import datetime
import functools
import logging
import os
import socket
import urllib.parse
import uuid
from typing import NamedTuple, Optional, Union

import torch

from ..shared_utils.log import LogConfig
from . import keys
from .exception import CoordinationTimeout, PayloadError, StoreConnectionError, StoreError
from .retry import SYSTEM_CLOCK, Clock

log = logging.getLogger(LogConfig.name)

DEFAULT_HOST = 'localhost'
DEFAULT_PORT = 29500
DEFAULT_ENDPOINT = f'tcp://{DEFAULT_HOST}:{DEFAULT_PORT}'


class LockToken(NamedTuple):
    key: str
    value: str


def _remote(fn):
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except RuntimeError as ex:
            # torch.distributed.DistError and its subclasses derive from RuntimeError
            raise StoreError(f'{fn.__name__}{args} failed: {ex}') from ex

    return wrapper


class KVStore:
    r'''
    Key-value store facade used by every coordination primitive.

    Wraps a :py:class:`torch.distributed.Store` (``TCPStore``, ``FileStore``
    or ``HashStore``) and provides the operations the protocol relies on:
    upsert, non-blocking get, delete, prefix listing, recursive prefix delete,
    an advisory lock and an atomic counter.

    torch stores have no native key enumeration, so every key created through
    :py:meth:`put` or :py:meth:`add` is recorded in an index of numbered slots
    below ``<namespace>/.index``. Listing reads all slots, filters them by
    prefix and drops keys that no longer exist. Deleting a key empties its slot
    and pushes the slot number on a free list, so the index is bounded by the
    number of keys alive at the same time rather than by the number of keys
    ever created. Index layout::

        .index/count          number of slots allocated
        .index/<n>            key held by slot n, empty when free
        .index/owner/<key>    slot number of key
        .index/free/head      free list read position
        .index/free/tail      free list write position
        .index/free/<i>       free slot numbers

    Every failing remote call raises :py:exc:`StoreError`.

    Args:
        store: connected torch store
        namespace: run-scoped prefix; the key index lives below it
        clock: time source for lock polling
    '''

    INDEX = '.index'
    INDEX_COUNT = 'count'
    INDEX_OWNER = 'owner'
    INDEX_FREE = 'free'
    INDEX_RELEASE_ATTEMPTS = 100
    LOCK_POLL_INTERVAL = 0.01

    def __init__(
        self,
        store: torch.distributed.Store,
        namespace: str,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.namespace = namespace.strip(keys.SEP)
        self.clock = clock if clock is not None else SYSTEM_CLOCK
        self._index_root = keys.join(self.namespace, self.INDEX)
        self._index_count = keys.join(self._index_root, self.INDEX_COUNT)

    @classmethod
    def connect(
        cls,
        endpoint: Optional[str] = None,
        namespace: str = 'xferbench',
        timeout: float = 30.0,
        clock: Optional[Clock] = None,
    ) -> 'KVStore':
        r'''
        Connects to the store at ``endpoint``.

        Supported endpoints:
            * ``tcp://host:port`` (or ``host:port``): client of a running
              ``TCPStore`` server, see :py:mod:`kvcoord.runtime.store_service`
            * ``file:///path/to/file``: ``FileStore`` on a shared file system
            * ``memory://``: in-process ``HashStore``

        Raises:
            StoreConnectionError: the store could not be reached
        '''
        endpoint = endpoint or DEFAULT_ENDPOINT
        if '://' not in endpoint:
            endpoint = f'tcp://{endpoint}'
        parts = urllib.parse.urlsplit(endpoint)
        store_timeout = datetime.timedelta(seconds=timeout)

        log.info(f'Connecting to store at {endpoint}')
        try:
            match parts.scheme:
                case 'tcp':
                    store = torch.distributed.TCPStore(
                        host_name=parts.hostname or DEFAULT_HOST,
                        port=parts.port or DEFAULT_PORT,
                        is_master=False,
                        wait_for_workers=False,
                        timeout=store_timeout,
                    )
                case 'file':
                    if not parts.path:
                        raise ValueError(f'{endpoint=} does not name a file')
                    store = torch.distributed.FileStore(parts.path, -1)
                    store.set_timeout(store_timeout)
                case 'memory':
                    store = torch.distributed.HashStore()
                    store.set_timeout(store_timeout)
                case _:
                    raise ValueError(f'unsupported store endpoint {endpoint!r}')
        except RuntimeError as ex:
            raise StoreConnectionError(f'Failed to connect to store at {endpoint}: {ex}') from ex

        return cls(store, namespace, clock)

    def _index_key(self, *parts) -> str:
        return keys.join(self._index_root, *parts)

    def _claim_slot(self) -> int:
        head_key = self._index_key(self.INDEX_FREE, 'head')
        tail_key = self._index_key(self.INDEX_FREE, 'tail')
        while True:
            head = int(self.store.get(head_key)) if self.store.check([head_key]) else 0
            if head >= self.store.add(tail_key, 0):
                return self.store.add(self._index_count, 1)
            desired = str(head + 1)
            expected = str(head) if head else ''
            if self.store.compare_set(head_key, expected, desired).decode() == desired:
                # blocks until the releasing caller published the entry
                entry = self._index_key(self.INDEX_FREE, desired)
                slot = int(self.store.get(entry))
                self.store.delete_key(entry)
                return slot

    def _index(self, key: str):
        owner_key = self._index_key(self.INDEX_OWNER, key)
        claim = f'claim:{uuid.uuid4().hex}'
        if self.store.compare_set(owner_key, '', claim).decode() != claim:
            # already indexed
            return
        slot = self._claim_slot()
        self.store.set(self._index_key(slot), key)
        self.store.set(owner_key, str(slot))

    def _release(self, key: str):
        owner_key = self._index_key(self.INDEX_OWNER, key)
        for _ in range(self.INDEX_RELEASE_ATTEMPTS):
            if not self.store.check([owner_key]):
                return
            slot = self.store.get(owner_key).decode()
            if slot.isdigit():
                break
            # the creator has not published the slot yet
            self.clock.sleep(self.LOCK_POLL_INTERVAL)
        else:
            log.warning(f'index slot of {key!r} still claimed, not released')
            return

        if self.store.delete_key(owner_key):
            self.store.set(self._index_key(slot), '')
            position = self.store.add(self._index_key(self.INDEX_FREE, 'tail'), 1)
            self.store.set(self._index_key(self.INDEX_FREE, position), slot)

    @_remote
    def put(self, key: str, value: Union[str, bytes]):
        created = not self.store.check([key])
        self.store.set(key, value)
        if created:
            self._index(key)

    @_remote
    def get(self, key: str) -> Optional[bytes]:
        if not self.store.check([key]):
            return None
        try:
            return self.store.get(key)
        except torch.distributed.DistStoreError:
            # deleted between check and get
            return None

    def get_str(self, key: str) -> Optional[str]:
        value = self.get(key)
        if value is None:
            return None
        try:
            return value.decode()
        except UnicodeDecodeError as ex:
            raise PayloadError(f'value of {key!r} is not text: {value[:16]!r}') from ex

    @_remote
    def delete(self, key: str) -> bool:
        if not self.store.delete_key(key):
            return False
        self._release(key)
        return True

    @_remote
    def add(self, key: str, delta: int) -> int:
        created = not self.store.check([key])
        value = self.store.add(key, delta)
        if created:
            self._index(key)
        return value

    @_remote
    def list_prefix(self, prefix: str) -> list[str]:
        count = self.store.add(self._index_count, 0)
        if count == 0:
            return []
        slots = [self._index_key(i) for i in range(1, count + 1)]
        indexed = dict.fromkeys(name.decode() for name in self.store.multi_get(slots))
        return [
            key
            for key in indexed
            if key and keys.is_under(key, prefix) and self.store.check([key])
        ]

    @_remote
    def delete_recursive(self, prefix: str) -> int:
        deleted = 0
        for key in self.list_prefix(prefix):
            if self.store.delete_key(key):
                self._release(key)
                deleted += 1

        if keys.is_under(self._index_root, prefix):
            self._drop_index()

        log.debug(f'deleted {deleted} keys under {prefix!r}')
        return deleted

    def _drop_index(self):
        count = self.store.add(self._index_count, 0)
        for i in range(1, count + 1):
            slot_key = self._index_key(i)
            if self.store.check([slot_key]):
                key = self.store.get(slot_key).decode()
                if key:
                    self.store.delete_key(self._index_key(self.INDEX_OWNER, key))
            self.store.delete_key(slot_key)

        tail_key = self._index_key(self.INDEX_FREE, 'tail')
        for i in range(1, self.store.add(tail_key, 0) + 1):
            self.store.delete_key(self._index_key(self.INDEX_FREE, i))
        self.store.delete_key(tail_key)
        self.store.delete_key(self._index_key(self.INDEX_FREE, 'head'))
        self.store.delete_key(self._index_count)

    @_remote
    def acquire_lock(self, key: str, timeout: Optional[float] = None) -> LockToken:
        r'''
        Blocks until the advisory lock ``key`` is held by this caller.

        The lock is free when the key is absent or empty; it is taken by
        atomically swapping in a token unique to this call.

        Raises:
            CoordinationTimeout: the lock was not acquired within ``timeout``
                seconds
        '''
        token = LockToken(key, f'{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}')
        start = self.clock.monotonic()
        created = not self.store.check([key])
        while True:
            holder = self.store.compare_set(key, '', token.value).decode()
            if holder == token.value:
                break
            if timeout is not None and self.clock.monotonic() - start > timeout:
                raise CoordinationTimeout(f'timed out acquiring lock {key!r} held by {holder!r}')
            self.clock.sleep(self.LOCK_POLL_INTERVAL)

        if created:
            self._index(key)
        log.debug(f'acquired lock {key!r}')
        return token

    @_remote
    def release_lock(self, token: LockToken):
        holder = self.store.compare_set(token.key, token.value, '').decode()
        if holder:
            log.warning(f'lock {token.key!r} was not held by this caller, holder={holder!r}')
        else:
            log.debug(f'released lock {token.key!r}')
