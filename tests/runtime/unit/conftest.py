# SPDX-FileCopyrightText: Copyright (c) 2024 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Pytest configuration for coordination runtime tests.

TCPStore creates non-daemon background threads that don't terminate properly,
causing pytest to hang after all tests complete. This hook ensures clean exit.
"""

import logging
import os
import sys


def pytest_configure():
    logging.basicConfig(
        level=os.getenv('KVCOORD_UNIT_TEST_LOGLEVEL', 'INFO'),
        format="%(asctime)s - %(levelname)s - %(threadName)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


_exit_status = 0


def pytest_sessionfinish(session, exitstatus):
    global _exit_status
    _exit_status = int(exitstatus)


def pytest_unconfigure(config):
    """Force exit once the summary is printed to avoid TCPStore thread hang."""
    if os.environ.get('PYTEST_FORCE_EXIT', '1') == '1':
        sys.stdout.flush()
        sys.stderr.flush()
        os._exit(_exit_status)
