"""Stateful handling of LUKS encrypted block devices through cryptsetup."""

from .lib.configuration import LuksConfiguration, get_configuration, load_configuration
from .lib.disk.backend import StorageBackend, classify_backend
from .lib.disk.device import BlockDevice, get_block_device
from .lib.disk.sysfs import SysFs
from .lib.exceptions import (
	DeviceLookupError,
	DiskError,
	LuksDumpError,
	LuksError,
	LuksOperationError,
	LuksPreconditionError,
	RequirementError,
	SysCallError,
)
from .lib.general import CommandResult, SysCommand, run
from .lib.luks.container import LuksContainer
from .lib.luks.dump import parse_luks_dump
from .lib.luks.mapper import DeviceMapperResolver
from .lib.models.luks import KeyMaterial, LuksDump, LuksSnapshot, LuksVersion, MapperInfo
from .lib.output import FormattedOutput, debug, error, info, log, warn

__all__ = [
	'BlockDevice',
	'CommandResult',
	'DeviceLookupError',
	'DeviceMapperResolver',
	'DiskError',
	'FormattedOutput',
	'KeyMaterial',
	'LuksConfiguration',
	'LuksContainer',
	'LuksDump',
	'LuksDumpError',
	'LuksError',
	'LuksOperationError',
	'LuksPreconditionError',
	'LuksSnapshot',
	'LuksVersion',
	'MapperInfo',
	'RequirementError',
	'StorageBackend',
	'SysCallError',
	'SysCommand',
	'SysFs',
	'classify_backend',
	'debug',
	'error',
	'get_block_device',
	'get_configuration',
	'info',
	'load_configuration',
	'log',
	'parse_luks_dump',
	'run',
	'warn',
]


def run_as_a_module() -> None:
	from .lib.args import main

	raise SystemExit(main())
