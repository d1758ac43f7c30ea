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

import dataclasses
from typing import Any, Optional

from .exception import CoordinationError


@dataclasses.dataclass(frozen=True)
class Result:
    r'''
    Outcome of a :py:class:`kvcoord.runtime.Runtime` primitive.

    A result is truthy on success. ``code`` mirrors the integer status used by
    the benchmark harness (``0`` on success, ``-1`` on any failure). The
    ``error`` is kept for logging only; callers are not expected to branch on
    its type.

    Args:
        value: payload of a successful primitive (received integer, bytes,
            broadcast values, reduced sum on the destination rank)
        error: exception that made the primitive fail
    '''

    SUCCESS = 0
    FAILURE = -1

    value: Any = None
    error: Optional[CoordinationError] = None

    @classmethod
    def success(cls, value: Any = None) -> 'Result':
        return cls(value=value)

    @classmethod
    def failure(cls, error: CoordinationError) -> 'Result':
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def code(self) -> int:
        return self.SUCCESS if self.ok else self.FAILURE

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value

    def __bool__(self) -> bool:
        return self.ok
