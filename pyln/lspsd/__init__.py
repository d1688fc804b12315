from .client import LspsClient, LspConfig, FundingAddress, CompactChannel, Balance, Payment
from .config import Conf, materialize
from .daemon import LspsD, LspsdFactory, ConnectParams, ReadinessState
from .download import resolve, exe_path, downloaded_exe_path
from .errors import (
    LspsdError, UnsupportedPlatform, DownloadFailed, IntegrityCheckFailed,
    ExtractionFailed, WorkspaceCreationFailed, InvalidConfiguration,
    SpawnFailed, EarlyExit, ProbeError, ReadinessTimeout, RequestFailed,
    DaemonError,
)
from .probe import wait_until_ready
from .version import Version
from .workspace import Workspace, provision

__version__ = "0.1.0"

__all__ = [
    "LspsD",
    "LspsdFactory",
    "LspsClient",
    "Conf",
    "ConnectParams",
    "ReadinessState",
    "LspConfig",
    "FundingAddress",
    "CompactChannel",
    "Balance",
    "Payment",
    "Workspace",
    "Version",
    "materialize",
    "provision",
    "resolve",
    "exe_path",
    "downloaded_exe_path",
    "wait_until_ready",
    "LspsdError",
    "UnsupportedPlatform",
    "DownloadFailed",
    "IntegrityCheckFailed",
    "ExtractionFailed",
    "WorkspaceCreationFailed",
    "InvalidConfiguration",
    "SpawnFailed",
    "EarlyExit",
    "ProbeError",
    "ReadinessTimeout",
    "RequestFailed",
    "DaemonError",
    "__version__",
]
