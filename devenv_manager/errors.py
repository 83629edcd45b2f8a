# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Error taxonomy shared by the provisioning and teardown workflows."""

from __future__ import annotations


class DevEnvError(RuntimeError):
    """Base class for every failure raised by devenv_manager."""


class PreconditionFailed(DevEnvError):
    """A probe found an invalid or unexpected external state."""


class ApplyFailed(DevEnvError):
    """A mutating provisioning step failed.

    Attributes:
        step: Name of the provisioning step that failed.
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"Step '{step}' failed: {message}")
        self.step = step


class ReadinessTimeout(DevEnvError):
    """A readiness wait exceeded its bound."""


class LaunchFailed(DevEnvError):
    """A supervised command could not be started."""


class NoPortAvailable(DevEnvError):
    """No free local port exists at or above the preferred port."""


class RemovalFailed(DevEnvError):
    """A teardown removal failed. Non-fatal to the teardown run."""


class OperationCancelled(DevEnvError):
    """The operator interrupted the running operation."""


class SessionLocked(DevEnvError):
    """Another devenv session already holds the lock for this cluster."""
