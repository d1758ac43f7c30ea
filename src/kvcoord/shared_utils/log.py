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
kvcoord Logger Module

This module configures the single package logger used by every coordination
component. Participants are independent processes, so each one sets up its
own handler and tags records with the host name and process id.

Environment Variables:
    KVCOORD_DEBUG: Set to "1", "true", "yes", or "on" to enable DEBUG level logging
    KVCOORD_NULL_HANDLER: Set to "1", "true", "yes", or "on" to disable logging
                          (allows applications to configure their own handlers)
    KVCOORD_LOGFILE: Path to log file for file-based logging

Usage:
    from kvcoord.shared_utils.log import setup_logger
    logger = setup_logger()  # Call once at startup

    # In other modules
    import logging
    log = logging.getLogger(LogConfig.name)
    log.info("Registered as rank 0")
"""

import logging
import os
import socket
from typing import Optional

_TRUTHY = ("1", "true", "yes", "on")


class LogConfig:
    """Utility class for log configuration."""

    name = "kvcoord"

    @classmethod
    def get_log_level(cls) -> int:
        debug_env = os.environ.get("KVCOORD_DEBUG", "").lower()
        return logging.DEBUG if debug_env in _TRUTHY else logging.INFO

    @classmethod
    def get_logfile(cls, logfile: Optional[str] = None) -> Optional[str]:
        return logfile or os.environ.get("KVCOORD_LOGFILE", None)

    @classmethod
    def use_null_handler(cls) -> bool:
        return os.environ.get("KVCOORD_NULL_HANDLER", "").lower() in _TRUTHY


def setup_logger(
    logfile: Optional[str] = None,
    level: Optional[int] = None,
    force_reset: bool = False,
) -> logging.Logger:
    """
    Setup the shared logger for the kvcoord package.

    If KVCOORD_NULL_HANDLER is set, a NullHandler is installed so that the
    embedding application keeps full control over log output. Otherwise the
    logger writes to ``logfile`` (or KVCOORD_LOGFILE) or to stderr.

    Args:
        logfile: Optional file path for logging.
        level: Optional explicit log level, overrides KVCOORD_DEBUG.
        force_reset: If True, drop existing handlers and configure the logger again.

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(LogConfig.name)

    if force_reset:
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    # Return existing logger if already configured
    if logger.handlers:
        if level is not None:
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)
        return logger

    logger.propagate = False

    if LogConfig.use_null_handler():
        logger.addHandler(logging.NullHandler())
        return logger

    log_level = level if level is not None else LogConfig.get_log_level()
    logger.setLevel(log_level)

    logfile = LogConfig.get_logfile(logfile)
    if logfile:
        handler = logging.FileHandler(filename=logfile)
    else:
        handler = logging.StreamHandler()  # Defaults to stderr.

    handler.setLevel(log_level)

    hostname = socket.gethostname()
    formatter = logging.Formatter(
        fmt=f"%(asctime)s [%(levelname)s] [{hostname}:%(process)5s] %(filename)s:%(lineno)d %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
