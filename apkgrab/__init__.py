"""apkgrab: multi-source Android package acquisition."""

__version__ = "0.1.0"

from apkgrab.assembler import PackageAssembler
from apkgrab.config import Config, load_config
from apkgrab.errors import AcquisitionError, ErrorKind
from apkgrab.models import AcquisitionOutcome, AcquisitionRequest, BatchReport, SourceKind
from apkgrab.orchestrator import Orchestrator

__all__ = [
    "AcquisitionError",
    "AcquisitionOutcome",
    "AcquisitionRequest",
    "BatchReport",
    "Config",
    "ErrorKind",
    "Orchestrator",
    "PackageAssembler",
    "SourceKind",
    "__version__",
    "load_config",
]
