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
kvcoord command line

    kvcoord serve --host 0.0.0.0 --port 29500
    kvcoord keys --coord-store-endpoint tcp://store-host:29500 --coord-namespace xferbench
    kvcoord purge --coord-store-endpoint tcp://store-host:29500 --coord-namespace xferbench

``purge`` removes the keys of a run whose rank 0 never reached its cleanup,
e.g. after a crash.
"""

import argparse
import logging
import sys

from ..shared_utils.log import setup_logger
from .config import CoordinationConfig
from .exception import CoordinationError
from .store import DEFAULT_PORT, KVStore
from .store_service import TCPStoreService


def _connect(cfg: CoordinationConfig) -> KVStore:
    return KVStore.connect(cfg.store_endpoint, namespace=cfg.namespace, timeout=cfg.store_timeout)


def cmd_serve(args: argparse.Namespace, cfg: CoordinationConfig, log: logging.Logger) -> int:
    service = TCPStoreService(
        host=args.host,
        port=args.port,
        timeout=args.timeout,
        use_libuv=args.use_libuv,
    )
    try:
        service.start()
    except Exception as e:
        log.error(f"Service failed: {e}")
        return 1
    return 0


def cmd_keys(args: argparse.Namespace, cfg: CoordinationConfig, log: logging.Logger) -> int:
    store = _connect(cfg)
    prefix = store.namespace if args.prefix is None else f'{store.namespace}/{args.prefix}'
    for key in sorted(store.list_prefix(prefix)):
        print(key)
    return 0


def cmd_purge(args: argparse.Namespace, cfg: CoordinationConfig, log: logging.Logger) -> int:
    store = _connect(cfg)
    deleted = store.delete_recursive(store.namespace)
    log.info(f"Purged {deleted} keys from namespace {store.namespace!r}")
    return 0


def get_args_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='kvcoord',
        description='Store-backed group coordination runtime tools',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='host a TCPStore for coordinated runs')
    serve.add_argument(
        '--host', default='0.0.0.0', help='Host to bind the TCPStore server to (default: 0.0.0.0)'
    )
    serve.add_argument(
        '--port',
        type=int,
        default=DEFAULT_PORT,
        help=f'Port to bind the TCPStore server to (default: {DEFAULT_PORT})',
    )
    serve.add_argument(
        '--timeout',
        type=float,
        default=300.0,
        help='Timeout in seconds for store operations (default: 300)',
    )
    serve.add_argument(
        '--no-libuv',
        dest='use_libuv',
        action='store_false',
        help='Disable the libuv TCPStore backend',
    )
    serve.set_defaults(handler=cmd_serve)

    keys = subparsers.add_parser('keys', help='list the keys of a namespace')
    keys.add_argument('--prefix', default=None, help='only list keys below this sub-prefix')
    keys.set_defaults(handler=cmd_keys)

    purge = subparsers.add_parser('purge', help='delete every key of a namespace')
    purge.set_defaults(handler=cmd_purge)

    for sub in (serve, keys, purge):
        CoordinationConfig.add_args(sub)

    return parser


def main(argv=None) -> int:
    args = get_args_parser().parse_args(argv)
    cfg = CoordinationConfig.from_args(args)
    log = setup_logger(level=cfg.log_level)

    try:
        return args.handler(args, cfg, log)
    except CoordinationError as ex:
        log.error(f"{args.command} failed: {ex}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
