from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from ..exceptions import DeviceLookupError, SysCallError
from ..general import SysCommand
from ..models.device import LsblkInfo, LsblkOutput, Size
from ..output import debug


@dataclass(frozen=True)
class BlockDevice:
	"""
	The generic view of a storage device: where it lives, how large
	it is and what the hardware reports it as.
	"""
	path: Path
	size: Size
	model: str | None
	type: str | None
	parent: str | None = None

	@property
	def name(self) -> str:
		return self.path.name

	@classmethod
	def from_lsblk(cls, info: LsblkInfo) -> BlockDevice:
		return cls(
			path=info.path,
			size=info.size,
			model=info.model,
			type=info.type,
			parent=info.pkname,
		)


def _fetch_lsblk_info(dev_path: Path | str) -> LsblkOutput:
	cmd = [
		'lsblk',
		'--json',
		'--bytes',
		'--nodeps',
		'--paths',
		'--output',
		','.join(LsblkInfo.fields()),
		str(dev_path),
	]

	try:
		worker = SysCommand(cmd, merge_stderr=False)
	except SysCallError as err:
		# Get the output minus the message/info from lsblk if it returns a non-zero exit code.
		if err.worker_log:
			debug(f'Error calling lsblk: {err.worker_log.decode()}')

		raise DeviceLookupError(f'Failed to read device "{dev_path}" with lsblk') from err

	try:
		return LsblkOutput.model_validate_json(worker.output(remove_cr=False))
	except ValidationError as err:
		raise DeviceLookupError(f'Unexpected lsblk output for "{dev_path}": {err}') from err


def get_lsblk_info(dev_path: Path | str) -> LsblkInfo:
	infos = _fetch_lsblk_info(dev_path)

	if infos.blockdevices:
		return infos.blockdevices[0]

	raise DeviceLookupError(f'lsblk failed to retrieve information for "{dev_path}"')


def get_block_device(dev_path: Path | str) -> BlockDevice:
	"""
	Looks up a device file. Raises DeviceLookupError when the device
	does not exist or cannot be queried.
	"""
	path = Path(dev_path)

	if not path.exists():
		raise DeviceLookupError(f'Device does not exist: {path}')

	return BlockDevice.from_lsblk(get_lsblk_info(path))
