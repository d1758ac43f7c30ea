# SPDX-FileCopyrightText: Copyright (c) 2024 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
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

import contextlib
import socket
import threading
import time

from kvcoord.runtime.config import CoordinationConfig
from kvcoord.runtime.context import RuntimeContext
from kvcoord.runtime.keys import KeyNamespace
from kvcoord.runtime.retry import Clock

THREAD_JOIN_TIMEOUT_SECS = 30.0


def find_free_port(host="127.0.0.1"):
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        _, port = sock.getsockname()
        return port


def unique_namespace(test_name):
    return f"test_{test_name}_{int(time.time() * 1000000)}"


def fast_config(**overrides):
    """Config with short polls so that tests finish in well under a second."""
    params = dict(
        lock_timeout=10.0,
        p2p_max_retries=200,
        p2p_poll_interval=0.01,
        recv_settle_delay=0.01,
        barrier_count_retries=500,
        barrier_ready_retries=500,
        barrier_poll_interval=0.01,
        barrier_cleanup_grace=0.2,
        bcast_max_retries=200,
        bcast_poll_interval=0.01,
        reduce_max_rounds=500,
        reduce_poll_interval=0.01,
    )
    params.update(overrides)
    return CoordinationConfig(**params)


def make_contexts(store, size, config=None, clock=None):
    """One context per rank, all sharing ``store``."""
    config = config if config is not None else fast_config()
    keys = KeyNamespace(store.namespace)
    kwargs = {} if clock is None else {'clock': clock}
    return [
        RuntimeContext(store=store, keys=keys, rank=rank, size=size, config=config, **kwargs)
        for rank in range(size)
    ]


class FakeClock(Clock):
    """Never blocks; every sleep advances the clock and is recorded."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self._lock = threading.Lock()

    def monotonic(self):
        with self._lock:
            return self.now

    def sleep(self, seconds):
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


def run_group(targets, timeout=THREAD_JOIN_TIMEOUT_SECS):
    """
    Runs every callable of ``targets`` in its own thread.

    Returns ``(results, errors)``, both lists indexed like ``targets``; an entry
    is ``None`` if the callable raised or returned nothing respectively.
    """
    results = [None] * len(targets)
    errors = [None] * len(targets)

    def worker(idx, target):
        try:
            results[idx] = target()
        except Exception as e:
            errors[idx] = e

    threads = [
        threading.Thread(target=worker, args=(idx, target), name=f"rank-{idx}")
        for idx, target in enumerate(targets)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=timeout)
        assert not thread.is_alive(), f"{thread.name} did not finish within {timeout}s"
    return results, errors
