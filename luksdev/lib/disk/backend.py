from __future__ import annotations

from enum import Enum
from pathlib import Path

from .device import BlockDevice, get_block_device
from .sysfs import SysFs


class StorageBackend(Enum):
	Disk = 'disk'
	Partition = 'partition'
	SoftwareRaid = 'mdraid'
	DeviceMapper = 'devicemapper'
	Loop = 'loop'
	Unknown = 'unknown'

	def is_stacked(self) -> bool:
		"""
		Software RAID and device-mapper devices share their metadata area
		with sibling members, so only filesystem signatures may be wiped
		from them and their partition tables must be left alone.
		"""
		match self:
			case StorageBackend.SoftwareRaid | StorageBackend.DeviceMapper:
				return True
			case _:
				return False


def classify_backend(dev_path: Path | str, sysfs: SysFs | None = None) -> StorageBackend:
	"""
	Maps a device to the storage backend it belongs to. Raises
	DeviceLookupError if the device cannot be found.
	"""
	device = get_block_device(dev_path)
	return _classify(device, sysfs or SysFs())


def _classify(device: BlockDevice, sysfs: SysFs) -> StorageBackend:
	name = device.path.resolve().name

	if device.type is not None:
		match device.type:
			case 'disk':
				pass
			case 'part':
				if _parent_is_raid(device, sysfs):
					return StorageBackend.SoftwareRaid
				return StorageBackend.Partition
			case 'loop':
				return StorageBackend.Loop
			case 'dm' | 'crypt' | 'lvm' | 'mpath':
				return StorageBackend.DeviceMapper
			case kind if kind.startswith('raid'):
				return StorageBackend.SoftwareRaid
			case _:
				return StorageBackend.Unknown

	# lsblk reports md arrays and some disks without a type, sysfs knows better
	if sysfs.read_attr(f'class/block/{name}/md/level') is not None:
		return StorageBackend.SoftwareRaid

	if sysfs.read_attr(f'class/block/{name}/dm/name') is not None:
		return StorageBackend.DeviceMapper

	if device.type == 'disk':
		return StorageBackend.Disk

	return StorageBackend.Unknown


def _parent_is_raid(device: BlockDevice, sysfs: SysFs) -> bool:
	if not device.parent:
		return False

	parent = Path(device.parent).name
	return sysfs.read_attr(f'class/block/{parent}/md/level') is not None
