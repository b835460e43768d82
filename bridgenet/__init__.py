"""Bridgenet - end-to-end harness for a two-chain bridge network.

Launch, share, wait on and tear down bridge test environments.
"""

__version__ = "0.1.0"

from bridgenet.constants import EnvironmentState
from bridgenet.exceptions import BridgenetError
from bridgenet.launcher_types import EnvironmentDescriptor, LaunchedEnvironment, StageResult

__all__ = [
    "__version__",
    "BridgenetError",
    "EnvironmentDescriptor",
    "EnvironmentState",
    "LaunchedEnvironment",
    "StageResult",
]
