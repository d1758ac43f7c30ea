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
Standalone TCPStore service

Benchmark processes never host the store themselves: ranks are only known
after registration, which already needs a reachable store. This service hosts
a TCPStore that every participant connects to as a client, and it outlives
any single benchmark run.
"""

import datetime
import logging
import signal
import sys
import time
from typing import Optional

import torch.distributed as dist

from ..shared_utils.log import LogConfig

log = logging.getLogger(LogConfig.name)


class TCPStoreService:
    """
    TCPStore server shared by all participants of one or more runs.
    """

    def __init__(
        self,
        host: str,
        port: int,
        timeout: float = 300.0,
        use_libuv: bool = True,
        install_signal_handlers: bool = True,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.use_libuv = use_libuv
        self.store: Optional[dist.TCPStore] = None
        self.running = False

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        log.info(f"Received signal {signum}, shutting down...")
        self.stop()
        sys.exit(0)

    def open(self) -> dist.TCPStore:
        """Create the TCPStore server without blocking."""
        log.info(f"Starting TCPStore service on {self.host}:{self.port}")
        self.store = dist.TCPStore(
            host_name=self.host,
            port=self.port,
            is_master=True,
            timeout=datetime.timedelta(seconds=self.timeout),
            multi_tenant=True,
            use_libuv=self.use_libuv,
            wait_for_workers=False,
        )
        self.running = True
        # port may have been 0, report the bound one
        self.port = self.store.port
        return self.store

    def start(self):
        """Start the TCPStore service and block until stopped."""
        try:
            self.open()
        except Exception as e:
            log.error(f"Failed to start TCPStore service: {e}")
            raise
        self._run()

    def _run(self):
        log.info(f"TCPStore service is running on {self.host}:{self.port}. Press Ctrl+C to stop.")
        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            log.info("Received keyboard interrupt")
        finally:
            self.stop()

    def stop(self):
        """Stop the TCPStore service."""
        if self.running:
            log.info("Stopping TCPStore service...")
            self.running = False
            # TCPStore has no explicit shutdown, dropping the reference closes the server
            self.store = None
            log.info("TCPStore service stopped")

    def get_connection_info(self) -> dict:
        """Get connection information for clients."""
        return {
            'endpoint': f'tcp://{self.host}:{self.port}',
            'host': self.host,
            'port': self.port,
            'timeout': self.timeout,
            'use_libuv': self.use_libuv,
        }
