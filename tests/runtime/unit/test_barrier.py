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

import time
from unittest import TestCase

from torch.distributed import TCPStore

from kvcoord.runtime.barrier import barrier, generation_id
from kvcoord.runtime.exception import BarrierOverflow, BarrierTimeout, CoordinationTimeout
from kvcoord.runtime.store import KVStore

from .utils import fast_config, make_contexts, run_group, unique_namespace

LATE_ARRIVAL_SECS = 0.3


class BarrierTest(TestCase):
    """Test the counter-and-ready-flag barrier."""

    @classmethod
    def setUpClass(cls):
        cls.shared_store = TCPStore(
            host_name="127.0.0.1",
            port=0,
            is_master=True,
            wait_for_workers=False,
        )

    def setUp(self):
        self.store = KVStore(self.shared_store, unique_namespace(self._testMethodName))

    def test_generation_id(self):
        self.assertEqual(generation_id('b', 0), 'b')
        self.assertEqual(generation_id('b', 2), 'b#2')

    def test_all_participants_pass(self):
        contexts = make_contexts(self.store, 4)
        _, errors = run_group([lambda ctx=ctx: barrier(ctx, 'b1') for ctx in contexts])
        self.assertEqual(errors, [None] * 4)
        # rank 0 removed the whole barrier subtree
        self.assertEqual(self.store.list_prefix(contexts[0].keys.barrier_root()), [])

    def test_nobody_leaves_before_last_arrival(self):
        contexts = make_contexts(self.store, 3)
        entered = {}
        left = {}

        def participant(ctx):
            if ctx.rank == 2:
                time.sleep(LATE_ARRIVAL_SECS)
            entered[ctx.rank] = time.monotonic()
            barrier(ctx, 'late')
            left[ctx.rank] = time.monotonic()

        _, errors = run_group([lambda ctx=ctx: participant(ctx) for ctx in contexts])
        self.assertEqual(errors, [None] * 3)
        last_arrival = max(entered.values())
        for rank in range(3):
            self.assertGreaterEqual(left[rank], last_arrival)

    def test_missing_participant_times_out(self):
        config = fast_config(barrier_count_retries=20)
        contexts = make_contexts(self.store, 3, config=config)
        with self.assertLogs('kvcoord', level='ERROR'):
            _, errors = run_group([lambda ctx=ctx: barrier(ctx, 'short') for ctx in contexts[:2]])
        for error in errors:
            self.assertIsInstance(error, BarrierTimeout)
            self.assertIsInstance(error, CoordinationTimeout)
            self.assertIn('2/3', str(error))

    def test_retry_after_timeout(self):
        contexts = make_contexts(self.store, 2, config=fast_config(barrier_count_retries=30))
        ctx0 = contexts[0]

        with self.assertLogs('kvcoord', level='ERROR'):
            with self.assertRaises(BarrierTimeout):
                barrier(ctx0, 'retry')
        # the failed attempt left no arrival behind
        self.assertEqual(self.store.get_str(ctx0.keys.barrier_count('retry')), '0')
        self.assertIsNone(self.store.get(ctx0.keys.barrier_proc('retry', 0)))
        self.assertEqual(ctx0.barrier_generation('retry'), 0)

        def participant(ctx):
            barrier(ctx, 'retry')
            barrier(ctx, 'retry')

        _, errors = run_group([lambda ctx=ctx: participant(ctx) for ctx in contexts])
        self.assertEqual(errors, [None, None])
        for ctx in contexts:
            self.assertEqual(ctx.barrier_generation('retry'), 2)

    def test_reused_id(self):
        contexts = make_contexts(self.store, 3)

        def participant(ctx):
            for _ in range(3):
                barrier(ctx, 'again')

        _, errors = run_group([lambda ctx=ctx: participant(ctx) for ctx in contexts])
        self.assertEqual(errors, [None] * 3)
        for ctx in contexts:
            self.assertEqual(ctx.barrier_generation('again'), 3)

    def test_overflow(self):
        (ctx,) = make_contexts(self.store, 1)
        self.store.add(ctx.keys.barrier_count('crowded'), 1)
        with self.assertRaises(BarrierOverflow):
            barrier(ctx, 'crowded')

    def test_single_participant(self):
        (ctx,) = make_contexts(self.store, 1, config=fast_config(barrier_cleanup_grace=0.0))
        barrier(ctx, 'alone')
        self.assertEqual(self.store.list_prefix(ctx.keys.barrier('alone')), [])
