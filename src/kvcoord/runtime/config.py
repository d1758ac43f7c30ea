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

import argparse
import contextlib
import dataclasses
import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import yaml

from .retry import RetryPolicy
from .store import DEFAULT_ENDPOINT


@dataclass
class CoordinationConfig:
    """
    Configuration of the store-backed coordination runtime

    * `store_endpoint` [str] address of the key-value store (`tcp://host:port`, `file:///path`, `memory://`).
    * `namespace` [str] prefix scoping all keys of one benchmark run.
    * `store_timeout` [float] timeout (in seconds) of a single store call, also used when connecting.
    * `lock_timeout` [float|None] timeout (in seconds) for acquiring the registration lock.
      None waits forever.
    * `p2p_max_retries`, `p2p_poll_interval` bound the point-to-point payload and ack polls.
    * `recv_settle_delay` [float] delay between writing the ack and deleting the payload.
    * `barrier_count_retries`, `barrier_ready_retries`, `barrier_poll_interval` bound the barrier
      arrival-count and ready-flag polls.
    * `barrier_cleanup_grace` [float] delay before rank 0 deletes a completed barrier.
    * `bcast_max_retries`, `bcast_poll_interval` bound the broadcast slot poll.
    * `reduce_max_rounds`, `reduce_poll_interval` bound the reduction listing rounds.
    * `final_barrier` [bool] enter a final barrier in `Runtime.close()` before any cleanup.
    * `log_level` log level of coordination components, applied to the `kvcoord` logger by `Runtime`
      and by the CLI.

    Defaults follow the benchmark harness: one-second polls, a minute for
    messages and ready flags, thirty seconds for barrier arrival and reductions.
    """

    store_endpoint: str = DEFAULT_ENDPOINT
    namespace: str = 'xferbench'
    store_timeout: float = 30.0
    lock_timeout: Optional[float] = 300.0
    p2p_max_retries: int = 60
    p2p_poll_interval: float = 1.0
    recv_settle_delay: float = 0.1
    barrier_count_retries: int = 30
    barrier_ready_retries: int = 60
    barrier_poll_interval: float = 1.0
    barrier_cleanup_grace: float = 5.0
    bcast_max_retries: int = 10
    bcast_poll_interval: float = 0.1
    reduce_max_rounds: int = 30
    reduce_poll_interval: float = 1.0
    final_barrier: bool = True
    log_level: int = logging.INFO

    ENV_PREFIX = 'KVCOORD_'

    @property
    def p2p_policy(self) -> RetryPolicy:
        return RetryPolicy(self.p2p_max_retries, self.p2p_poll_interval)

    @property
    def barrier_count_policy(self) -> RetryPolicy:
        return RetryPolicy(self.barrier_count_retries, self.barrier_poll_interval)

    @property
    def barrier_ready_policy(self) -> RetryPolicy:
        return RetryPolicy(self.barrier_ready_retries, self.barrier_poll_interval)

    @property
    def bcast_policy(self) -> RetryPolicy:
        return RetryPolicy(self.bcast_max_retries, self.bcast_poll_interval)

    @property
    def reduce_policy(self) -> RetryPolicy:
        return RetryPolicy(self.reduce_max_rounds, self.reduce_poll_interval)

    @staticmethod
    def from_kwargs(ignore_not_recognized: bool = True, **kwargs) -> 'CoordinationConfig':
        """
        Create a CoordinationConfig object from keyword arguments.

        Args:
            ignore_not_recognized (bool, optional): Whether to ignore unrecognized arguments. Defaults to True.
            **kwargs: Keyword arguments representing the fields of the CoordinationConfig object.

        Raises:
            ValueError: If there are unrecognized arguments and ignore_not_recognized is False.
        """
        fields_set = {f.name for f in fields(CoordinationConfig) if f.init}
        matching_args = {k: v for k, v in kwargs.items() if k in fields_set}
        extra_args = {k: v for k, v in kwargs.items() if k not in fields_set}
        if extra_args and not ignore_not_recognized:
            raise ValueError(f"Not recognized args: {extra_args}")
        return CoordinationConfig(**matching_args)

    @staticmethod
    def from_yaml_file(cfg_path: str, ignore_not_recognized: bool = True) -> 'CoordinationConfig':
        """
        Load the configuration from a YAML file.

        YAML file should contain `coordination` section, at the top level or nested in any other section.

        Raises:
            ValueError: If the 'coordination' section is not found in the config file.
        """
        with open(cfg_path, 'r') as file:
            yaml_data = yaml.safe_load(file)
            coord_cfg = CoordinationConfig._find_coordination_section(yaml_data)
            if coord_cfg:
                return CoordinationConfig.from_kwargs(
                    **coord_cfg, ignore_not_recognized=ignore_not_recognized
                )
            else:
                raise ValueError(f"'coordination' section not found in config file {cfg_path}")

    @staticmethod
    def from_env(base: Optional['CoordinationConfig'] = None) -> 'CoordinationConfig':
        """
        Override `store_endpoint` and `namespace` from KVCOORD_STORE_ENDPOINT and KVCOORD_NAMESPACE.
        """
        cfg = dataclasses.replace(base) if base is not None else CoordinationConfig()
        endpoint = os.environ.get(f'{CoordinationConfig.ENV_PREFIX}STORE_ENDPOINT')
        namespace = os.environ.get(f'{CoordinationConfig.ENV_PREFIX}NAMESPACE')
        if endpoint:
            cfg.store_endpoint = endpoint
        if namespace:
            cfg.namespace = namespace
        return cfg

    @staticmethod
    def add_args(parser: argparse.ArgumentParser):
        """
        Add `--coord-<field>` options and `--coord-cfg-path` to the parser.
        """
        group = parser.add_argument_group('coordination')
        group.add_argument(
            '--coord-cfg-path',
            default=None,
            help='YAML file with a `coordination` section',
        )
        for field in fields(CoordinationConfig):
            option = f"--coord-{field.name.replace('_', '-')}"
            if field.name == 'final_barrier':
                group.add_argument(option, type=_parse_bool, default=None, dest=f'coord_{field.name}')
            elif field.name == 'log_level':
                group.add_argument(option, type=str, default=None, dest=f'coord_{field.name}')
            elif field.name == 'lock_timeout':
                group.add_argument(option, type=str, default=None, dest=f'coord_{field.name}')
            else:
                field_type = type(field.default)
                group.add_argument(option, type=field_type, default=None, dest=f'coord_{field.name}')

    @staticmethod
    def from_args(args: argparse.Namespace) -> 'CoordinationConfig':
        """
        Init config object from parsed CLI args.

        Implements the following logic:
        - Use default config as a base.
        - If there is a config file argument defined, first try to read the config from the file.
        - Apply KVCOORD_* environment overrides.
        - Update the config with `--coord-*` args provided via CLI.
        """
        cfg = CoordinationConfig()

        cfg_path = getattr(args, 'coord_cfg_path', None)
        if cfg_path is not None:
            with contextlib.suppress(ValueError):
                cfg = CoordinationConfig.from_yaml_file(cfg_path)

        cfg = CoordinationConfig.from_env(cfg)

        for field in fields(CoordinationConfig):
            val = getattr(args, f"coord_{field.name}", None)
            if val is not None:
                if field.name == 'lock_timeout' and isinstance(val, str):
                    val = _parse_timeout_arg(val)
                setattr(cfg, field.name, val)

        cfg._fix_log_level_type()
        return cfg

    def to_yaml_file(self, cfg_path: str) -> None:
        with open(cfg_path, 'w') as file:
            yaml.dump({'coordination': dataclasses.asdict(self)}, file)

    @staticmethod
    def _find_coordination_section(yaml_data):
        if isinstance(yaml_data, dict):
            if "coordination" in yaml_data:
                return yaml_data["coordination"]
            else:
                for key, value in yaml_data.items():
                    sub_config = CoordinationConfig._find_coordination_section(value)
                    if sub_config:
                        return sub_config
        elif isinstance(yaml_data, list):
            for item in yaml_data:
                sub_config = CoordinationConfig._find_coordination_section(item)
                if sub_config:
                    return sub_config
        return None

    def _fix_log_level_type(self):
        if isinstance(self.log_level, int):
            if not (logging.DEBUG <= self.log_level <= logging.CRITICAL):
                raise ValueError(
                    f"Invalid log level value ({self.log_level}). Should be in [{logging.DEBUG} (DEBUG), {logging.FATAL} (CRITICAL)]"
                )
        elif isinstance(self.log_level, str):
            log_level = logging.getLevelName(self.log_level.upper())
            if not isinstance(log_level, int):
                raise ValueError(f"Invalid log level string: {self.log_level}")
            self.log_level = log_level
        else:
            raise ValueError(f"Invalid value for log_level: {self.log_level}")

    def __post_init__(self):
        self._fix_log_level_type()
        if not self.namespace or not self.namespace.strip('/'):
            raise ValueError("namespace must not be empty")


def _parse_timeout_arg(timeout_arg: str) -> Optional[float]:
    timeout_arg = timeout_arg.strip()
    if timeout_arg.lower() in ['none', 'null', '']:
        return None
    return float(timeout_arg)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')
