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


class CoordinationError(Exception):
    r'''
    Base :py:exc:`Exception` for errors raised by the coordination
    primitives. :py:class:`kvcoord.runtime.Runtime` converts it into a failed
    :py:class:`kvcoord.runtime.result.Result`.
    '''

    pass


class StoreError(CoordinationError):
    r'''
    A single remote call to the key-value store failed.
    '''

    pass


class CoordinationTimeout(CoordinationError):
    r'''
    A bounded polling loop exhausted its retry budget.
    '''

    pass


class BarrierError(CoordinationError):
    pass


class BarrierTimeout(BarrierError, CoordinationTimeout):
    pass


class BarrierOverflow(BarrierError):
    pass


class PayloadError(CoordinationError):
    r'''
    A value read from the store could not be decoded (malformed numeric text
    or message metadata). Never retried.
    '''

    pass


class FatalCoordinationError(CoordinationError):
    r'''
    Unrecoverable error: no coordination is possible for the rest of the run.
    Raised from :py:class:`kvcoord.runtime.Runtime` construction and never
    converted into a result code.
    '''

    pass


class StoreConnectionError(FatalCoordinationError):
    pass


class RegistrationError(FatalCoordinationError):
    pass
