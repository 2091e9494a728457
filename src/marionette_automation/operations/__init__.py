from .base import Operation
from .debug import AssertOperation, DebugOperation, SetFactOperation
from .exec import ExecOperation
from .file import FileOperation
from .git import GitOperation
from .line import LineOperation
from .package import PackageOperation
from .process import ProcessOperation
from .repository import RepositoryOperation
from .service import ServiceOperation
from .wait_for import WaitForOperation

OPERATION_REGISTRY = {
    "package": PackageOperation,
    "repository": RepositoryOperation,
    "file": FileOperation,
    "line": LineOperation,
    "service": ServiceOperation,
    "process": ProcessOperation,
    "git": GitOperation,
    "exec": ExecOperation,
    "debug": DebugOperation,
    "set_fact": SetFactOperation,
    "assert": AssertOperation,
    "wait_for": WaitForOperation,
}

__all__ = [
    "Operation",
    "PackageOperation",
    "RepositoryOperation",
    "FileOperation",
    "LineOperation",
    "ServiceOperation",
    "ProcessOperation",
    "GitOperation",
    "ExecOperation",
    "DebugOperation",
    "SetFactOperation",
    "AssertOperation",
    "WaitForOperation",
    "OPERATION_REGISTRY",
]
