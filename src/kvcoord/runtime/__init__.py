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

from .barrier import BarrierState  # noqa: F401
from .config import CoordinationConfig  # noqa: F401
from .context import RuntimeContext  # noqa: F401
from .exception import BarrierError  # noqa: F401
from .exception import BarrierOverflow  # noqa: F401
from .exception import BarrierTimeout  # noqa: F401
from .exception import CoordinationError  # noqa: F401
from .exception import CoordinationTimeout  # noqa: F401
from .exception import FatalCoordinationError  # noqa: F401
from .exception import PayloadError  # noqa: F401
from .exception import RegistrationError  # noqa: F401
from .exception import StoreConnectionError  # noqa: F401
from .exception import StoreError  # noqa: F401
from .keys import KeyNamespace  # noqa: F401
from .keys import MessageKind  # noqa: F401
from .result import Result  # noqa: F401
from .retry import Clock  # noqa: F401
from .retry import RetryPolicy  # noqa: F401
from .runtime import Runtime  # noqa: F401
from .store import KVStore  # noqa: F401
