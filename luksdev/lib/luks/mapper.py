from __future__ import annotations

import re
from pathlib import Path

from ..configuration import get_configuration
from ..disk.sysfs import SysFs
from ..models.luks import MapperInfo
from ..output import debug

_DM_NODE = re.compile(r'^dm-\d+$')


class DeviceMapperResolver:
	"""
	Finds the decrypted mapping sitting on top of a device by looking at
	the holders the kernel registered for it.
	"""

	def __init__(self, sysfs: SysFs | None = None) -> None:
		self._sysfs = sysfs or SysFs()

	@staticmethod
	def sysfs_name(dev_path: Path) -> str:
		# /dev/disk/by-uuid/... and friends are symlinks to the kernel node
		return dev_path.resolve().name

	def holders(self, dev_path: Path) -> list[str] | None:
		return self._sysfs.list_dir(Path('class/block') / self.sysfs_name(dev_path) / 'holders')

	def resolve(self, dev_path: Path) -> MapperInfo | None:
		holders = self.holders(dev_path)

		if holders is None:
			debug(f'No holders directory for {dev_path}, not mapped')
			return None

		if len(holders) != 1:
			if len(holders) > 1:
				debug(f'{dev_path} has {len(holders)} holders ({", ".join(holders)}), not treating it as mapped')
			return None

		return self._mapper_info(holders[0])

	def _mapper_info(self, holder: str) -> MapperInfo:
		config = get_configuration()

		if _DM_NODE.match(holder):
			dm_name = self._sysfs.read_attr(Path('class/block') / holder / 'dm' / 'name')

			if dm_name:
				return MapperInfo(name=dm_name, dev_path=config.mapper_root / dm_name)

			debug(f'Could not read device-mapper name of {holder}, using the raw node')

		return MapperInfo(name=holder, dev_path=config.dev_root / holder)
