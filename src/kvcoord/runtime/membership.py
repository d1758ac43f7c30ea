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
from .exception import CoordinationError, RegistrationError
from .keys import KeyNamespace
from .store import KVStore

log = logging.getLogger(LogConfig.name)


class Registrar:
    r'''
    Assigns contiguous ranks to joining processes.

    Ranks are handed out in registration order: the ``size`` key holds the
    number of processes registered so far and is read and bumped while the
    namespace lock is held, so concurrent joins never collide.
    '''

    ACTIVE = 'active'

    def __init__(self, store: KVStore, keys: KeyNamespace, lock_timeout: Optional[float] = None):
        self.store = store
        self.keys = keys
        self.lock_timeout = lock_timeout

    def register(self) -> int:
        r'''
        Registers this process and returns its rank.

        Raises:
            RegistrationError: the lock could not be acquired or the store
                failed while the registration record was written
        '''
        try:
            token = self.store.acquire_lock(self.keys.lock(), timeout=self.lock_timeout)
        except CoordinationError as ex:
            raise RegistrationError(f'Failed to acquire lock: {ex}') from ex

        try:
            size = self.store.get_str(self.keys.size())
            rank = int(size) if size is not None else 0
            self.store.put(self.keys.size(), str(rank + 1))
            self.store.put(self.keys.rank(rank), self.ACTIVE)
        except (CoordinationError, ValueError) as ex:
            raise RegistrationError(f'Failed to register: {ex}') from ex
        finally:
            self.store.release_lock(token)

        return rank

    def registered_ranks(self) -> list[int]:
        prefix = self.keys.key(KeyNamespace.RANK)
        return sorted(int(key.rsplit('/', 1)[-1]) for key in self.store.list_prefix(prefix))

    def deregister(self, rank: int, is_owner: bool):
        r'''
        Removes the registration record of ``rank``.

        The owner (rank 0) also removes ``size``, the barrier subtree and the
        whole namespace. This assumes every other participant finished all
        operations; :py:meth:`kvcoord.runtime.Runtime.close` enters a final
        barrier first.
        '''
        self.store.delete(self.keys.rank(rank))
        log.debug(f'{rank=} deregistered')

        if is_owner:
            self.store.delete(self.keys.size())
            self.store.delete_recursive(self.keys.barrier_root())
            deleted = self.store.delete_recursive(self.keys.prefix)
            log.info(f'{rank=} purged namespace {self.keys.prefix!r} ({deleted} keys)')
