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

import os
import tempfile
from unittest import TestCase, mock

from torch.distributed import TCPStore

from kvcoord.runtime.exception import (
    CoordinationTimeout,
    PayloadError,
    StoreConnectionError,
    StoreError,
)
from kvcoord.runtime.store import KVStore
from kvcoord.runtime.store_service import TCPStoreService

from .utils import FakeClock, find_free_port, run_group, unique_namespace


class KVStoreTest(TestCase):
    """Test the store facade on top of a shared TCPStore."""

    @classmethod
    def setUpClass(cls):
        cls.shared_store = TCPStore(
            host_name="127.0.0.1",
            port=0,
            is_master=True,
            wait_for_workers=False,
        )

    def setUp(self):
        self.ns = unique_namespace(self._testMethodName)
        self.store = KVStore(self.shared_store, self.ns)

    def key(self, *parts):
        return '/'.join((self.ns,) + tuple(str(p) for p in parts))

    def test_put_get_delete(self):
        self.store.put(self.key('a'), 'value')
        self.assertEqual(self.store.get(self.key('a')), b'value')
        self.assertEqual(self.store.get_str(self.key('a')), 'value')

        self.store.put(self.key('a'), b'\x00\x01')
        self.assertEqual(self.store.get(self.key('a')), b'\x00\x01')

        self.assertTrue(self.store.delete(self.key('a')))
        self.assertIsNone(self.store.get(self.key('a')))
        self.assertFalse(self.store.delete(self.key('a')))

    def test_get_missing_does_not_block(self):
        self.assertIsNone(self.store.get(self.key('missing')))
        self.assertIsNone(self.store.get_str(self.key('missing')))

    def test_list_prefix(self):
        for name in ('b1/count', 'b1/ready', 'b10/count', 'other'):
            self.store.put(self.key('barrier', name), '1')
        self.store.put(self.key('barrier', 'b1/count'), '2')

        self.assertEqual(
            sorted(self.store.list_prefix(self.key('barrier', 'b1'))),
            [self.key('barrier', 'b1/count'), self.key('barrier', 'b1/ready')],
        )
        self.assertEqual(len(self.store.list_prefix(self.key('barrier'))), 4)

        self.store.delete(self.key('barrier', 'b1/ready'))
        self.assertEqual(
            self.store.list_prefix(self.key('barrier', 'b1')), [self.key('barrier', 'b1/count')]
        )

    def test_list_prefix_empty_namespace(self):
        self.assertEqual(self.store.list_prefix(self.ns), [])

    def test_delete_recursive(self):
        self.store.put(self.key('reduce/r0/rank-1'), '1.0')
        self.store.put(self.key('reduce/r0/rank-2'), '2.0')
        self.store.put(self.key('reduce/r01/rank-1'), '3.0')

        self.assertEqual(self.store.delete_recursive(self.key('reduce/r0')), 2)
        self.assertEqual(self.store.list_prefix(self.key('reduce')), [self.key('reduce/r01/rank-1')])
        self.assertEqual(self.store.delete_recursive(self.key('reduce/r0')), 0)

    def test_delete_recursive_namespace_drops_index(self):
        self.store.put(self.key('size'), '2')
        self.store.add(self.key('barrier/b/count'), 1)

        self.assertEqual(self.store.delete_recursive(self.ns), 2)
        self.assertFalse(self.shared_store.check([self.key(KVStore.INDEX, KVStore.INDEX_COUNT)]))
        self.assertFalse(self.shared_store.check([self.key(KVStore.INDEX, '1')]))

        # the namespace is usable again afterwards
        self.store.put(self.key('size'), '1')
        self.assertEqual(self.store.list_prefix(self.ns), [self.key('size')])

    def index_slots(self):
        return self.shared_store.add(self.key(KVStore.INDEX, KVStore.INDEX_COUNT), 0)

    def test_deleted_slots_are_reused(self):
        for name in ('a', 'b', 'c'):
            self.store.put(self.key(name), '1')
        self.store.delete(self.key('b'))
        self.store.put(self.key('d'), '1')

        self.assertEqual(self.index_slots(), 3)
        self.assertEqual(
            sorted(self.store.list_prefix(self.ns)), [self.key('a'), self.key('c'), self.key('d')]
        )

    def test_index_bounded_by_live_keys(self):
        for i in range(100):
            self.store.put(self.key('msg', i), str(i))
            self.store.add(self.key('count', i), 1)
            self.store.delete(self.key('msg', i))
            self.store.delete_recursive(self.key('count'))

        self.assertLessEqual(self.index_slots(), 2)
        self.assertEqual(self.store.list_prefix(self.ns), [])

    def test_index_bounded_with_concurrent_writers(self):
        num_writers = 4

        def writer(idx):
            for i in range(25):
                key = self.key(f'w{idx}', i)
                self.store.put(key, 'x')
                assert self.store.list_prefix(self.key(f'w{idx}')) == [key]
                self.store.delete(key)

        _, errors = run_group([lambda idx=idx: writer(idx) for idx in range(num_writers)])
        self.assertEqual(errors, [None] * num_writers)
        self.assertLessEqual(self.index_slots(), num_writers)
        self.assertEqual(self.store.list_prefix(self.ns), [])

    def test_repeated_put_indexes_once(self):
        for _ in range(3):
            self.store.put(self.key('size'), '1')
        self.assertEqual(self.index_slots(), 1)

    def test_get_str_of_binary_value(self):
        self.store.put(self.key('bin'), b'\xff\xfe')
        self.assertEqual(self.store.get(self.key('bin')), b'\xff\xfe')
        with self.assertRaises(PayloadError):
            self.store.get_str(self.key('bin'))

    def test_torch_errors_become_store_errors(self):
        torch_store = mock.Mock()
        torch_store.check.side_effect = RuntimeError('connection reset')
        store = KVStore(torch_store, self.ns)
        with self.assertRaises(StoreError):
            store.get(self.key('a'))
        with self.assertRaises(StoreError):
            store.put(self.key('a'), '1')

    def test_add(self):
        self.assertEqual(self.store.add(self.key('count'), 1), 1)
        self.assertEqual(self.store.add(self.key('count'), 2), 3)
        self.assertEqual(self.store.get_str(self.key('count')), '3')
        self.assertEqual(self.store.list_prefix(self.key('count')), [self.key('count')])

    def test_lock_is_exclusive(self):
        clock = FakeClock()
        store = KVStore(self.shared_store, self.ns, clock=clock)
        token = store.acquire_lock(self.key('lock'))

        with self.assertRaises(CoordinationTimeout):
            store.acquire_lock(self.key('lock'), timeout=0.5)
        self.assertTrue(clock.sleeps)

        store.release_lock(token)
        other = store.acquire_lock(self.key('lock'), timeout=0.5)
        self.assertNotEqual(token.value, other.value)
        store.release_lock(other)
        self.assertEqual(store.get_str(self.key('lock')), '')

    def test_release_by_non_holder_logs_warning(self):
        token = self.store.acquire_lock(self.key('lock'))
        stale = token._replace(value='somebody-else')
        with self.assertLogs('kvcoord', level='WARNING'):
            self.store.release_lock(stale)
        self.assertEqual(self.store.get_str(self.key('lock')), token.value)
        self.store.release_lock(token)


class ConnectTest(TestCase):

    def test_memory_endpoint(self):
        store = KVStore.connect('memory://', namespace='mem')
        store.put('mem/a', '1')
        self.assertEqual(store.get_str('mem/a'), '1')
        self.assertEqual(store.namespace, 'mem')

    def test_file_endpoint(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, 'store')
            store = KVStore.connect(f'file://{path}', namespace='file')
            store.put('file/a', '1')
            other = KVStore.connect(f'file://{path}', namespace='file')
            self.assertEqual(other.get_str('file/a'), '1')

    def test_tcp_endpoint(self):
        service = TCPStoreService('127.0.0.1', 0, timeout=10.0, install_signal_handlers=False)
        service.open()
        try:
            endpoint = service.get_connection_info()['endpoint']
            self.assertNotEqual(service.port, 0)
            writer = KVStore.connect(endpoint, namespace='tcp')
            reader = KVStore.connect(f'127.0.0.1:{service.port}', namespace='tcp')
            writer.put('tcp/a', 'x')
            self.assertEqual(reader.get_str('tcp/a'), 'x')
            self.assertEqual(reader.list_prefix('tcp'), ['tcp/a'])
        finally:
            service.stop()

    def test_unsupported_scheme(self):
        with self.assertRaises(ValueError):
            KVStore.connect('etcd://localhost:2379')
        with self.assertRaises(ValueError):
            KVStore.connect('file://')

    def test_unreachable_endpoint(self):
        port = find_free_port()
        with self.assertRaises(StoreConnectionError):
            KVStore.connect(f'tcp://127.0.0.1:{port}', timeout=1.0)
