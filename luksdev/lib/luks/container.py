from __future__ import annotations

import os
import re
import shlex
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import override

from ..configuration import get_configuration
from ..disk.backend import StorageBackend, classify_backend
from ..disk.device import get_block_device
from ..disk.sysfs import SysFs
from ..exceptions import (
	DeviceLookupError,
	DiskError,
	LuksDumpError,
	LuksOperationError,
	LuksPreconditionError,
	RequirementError,
	SysCallError,
)
from ..general import CommandResult, run
from ..models.device import Size
from ..models.luks import (
	MAX_KEY_SLOTS,
	CacheState,
	Failed,
	KeyMaterial,
	LuksSnapshot,
	LuksVersion,
	MapperInfo,
	Stale,
	Valid,
)
from ..output import debug, info, warn
from ..translationhandler import tr
from .dump import parse_luks_dump
from .mapper import DeviceMapperResolver

_TEST_KEY_SLOT = re.compile(r'Key slot (\d+) unlocked')

_device_locks: dict[Path, threading.RLock] = {}
_device_locks_guard = threading.Lock()


def _device_lock(dev_path: Path) -> threading.RLock:
	"""
	One lock per resolved device path, shared by every container
	instance bound to that device within this process.
	"""
	key = dev_path.resolve()

	with _device_locks_guard:
		if key not in _device_locks:
			_device_locks[key] = threading.RLock()
		return _device_locks[key]


class LuksContainer:
	"""
	A block device formatted (or about to be formatted) as a LUKS container.

	All attributes are derived from cryptsetup and sysfs on demand and cached
	until the next mutating operation, which always drops the cache no matter
	whether it succeeded. Queries return None when the state of the device
	could not be derived.
	"""

	def __init__(self, dev_path: Path | str, sysfs: SysFs | None = None) -> None:
		if dev_path is None:
			raise ValueError('Container must have a device path set')

		self.dev_path = Path(dev_path)
		self._sysfs = sysfs or SysFs()
		self._resolver = DeviceMapperResolver(self._sysfs)
		self._state: CacheState = Stale()

		if get_configuration().device_locking:
			self._lock = _device_lock(self.dev_path)
		else:
			self._lock = threading.RLock()

	@override
	def __repr__(self) -> str:
		return f'LuksContainer(dev_path={self.dev_path}, state={type(self._state).__name__})'

	@property
	def state(self) -> CacheState:
		return self._state

	@staticmethod
	def is_luks_container(dev_path: Path | str) -> bool:
		config = get_configuration()
		try:
			result = run([config.cryptsetup_bin, 'isLuks', str(dev_path)], quiet=True, check=False)
		except (RequirementError, OSError) as err:
			debug(f'Unable to check {dev_path} for a LUKS header: {err}')
			return False

		return result.exit_code == 0

	def invalidate(self) -> None:
		self._state = Stale()

	def ensure_fresh(self) -> bool:
		"""
		Derives the state of the container unless a valid snapshot exists.
		A failed derivation is remembered until refresh() or the next
		mutating operation, queries report None in the meantime.
		"""
		with self._lock:
			match self._state:
				case Valid():
					return True
				case Failed():
					return False
				case Stale():
					pass

			try:
				self._state = Valid(self._derive())
			except (DiskError, SysCallError, RequirementError, OSError) as err:
				debug(f'Unable to derive LUKS state of {self.dev_path}: {err}')
				self._state = Failed(str(err))
				return False

			return True

	def refresh(self) -> bool:
		with self._lock:
			self.invalidate()
			return self.ensure_fresh()

	def _derive(self) -> LuksSnapshot:
		config = get_configuration()

		uuid_result = run([config.cryptsetup_bin, 'luksUUID', str(self.dev_path)], quiet=True, check=False)
		if not uuid_result.success:
			raise LuksPreconditionError(f'{self.dev_path} is not a LUKS container: {uuid_result.combined_output()}')

		device = get_block_device(self.dev_path)
		mapper = self._resolver.resolve(self.dev_path)

		dump_result = run([config.cryptsetup_bin, 'luksDump', str(self.dev_path)], quiet=True, check=False)
		if not dump_result.success:
			raise LuksDumpError(f'luksDump failed for {self.dev_path}: {dump_result.combined_output()}')

		lines = dump_result.lines()

		return LuksSnapshot(
			dev_path=self.dev_path,
			uuid=uuid_result.decode(),
			size=device.size,
			model=device.model,
			dump=parse_luks_dump(lines),
			header_dump=tuple(lines),
			mapper=mapper,
		)

	def snapshot(self) -> LuksSnapshot | None:
		if not self.ensure_fresh():
			return None

		match self._state:
			case Valid(snapshot):
				return snapshot
			case _:
				return None

	def failure_reason(self) -> str | None:
		match self._state:
			case Failed(reason):
				return reason
			case _:
				return None

	def uuid(self) -> str | None:
		if snapshot := self.snapshot():
			return snapshot.uuid
		return None

	def version(self) -> LuksVersion | None:
		if snapshot := self.snapshot():
			return snapshot.dump.version
		return None

	def label(self) -> str | None:
		if snapshot := self.snapshot():
			return snapshot.dump.label
		return None

	def used_key_slots(self) -> int | None:
		if snapshot := self.snapshot():
			return snapshot.dump.used_key_slots
		return None

	def free_key_slots(self) -> int | None:
		if snapshot := self.snapshot():
			return snapshot.dump.free_key_slots
		return None

	def is_open(self) -> bool | None:
		if snapshot := self.snapshot():
			return snapshot.is_open
		return None

	def mapper_dev_path(self) -> Path | None:
		if (snapshot := self.snapshot()) and snapshot.mapper:
			return snapshot.mapper.dev_path
		return None

	def mapper_name(self) -> str | None:
		if (snapshot := self.snapshot()) and snapshot.mapper:
			return snapshot.mapper.name
		return None

	def size(self) -> Size | None:
		if snapshot := self.snapshot():
			return snapshot.size
		return None

	def detail(self) -> str | None:
		if snapshot := self.snapshot():
			return '\n'.join(snapshot.header_dump)
		return None

	def description(self) -> str | None:
		if not (snapshot := self.snapshot()):
			return None

		model = snapshot.model or tr('Unknown device')
		size = snapshot.size.binary_unit_highest()

		return tr('LUKS container on {} ({}), {}').format(model, self.dev_path, size)

	def default_mapper_name(self) -> str:
		return f'{get_configuration().mapper_prefix}{self.dev_path.resolve().name}'

	@contextmanager
	def _mutation(self) -> Iterator[None]:
		with self._lock:
			# preconditions are checked against the device as it is now
			if isinstance(self._state, Failed):
				self.invalidate()

			try:
				yield
			finally:
				self.invalidate()

	def _require_snapshot(self) -> LuksSnapshot:
		if snapshot := self.snapshot():
			return snapshot

		raise LuksPreconditionError(f'{self.dev_path} is not an accessible LUKS container: {self.failure_reason()}')

	def _cryptsetup(self, action: str, args: list[str], input_data: bytes | None = None) -> CommandResult:
		cmd = [get_configuration().cryptsetup_bin, *args]
		debug(f'cryptsetup {action}: {shlex.join(cmd)}')

		try:
			return run(cmd, input_data=input_data)
		except SysCallError as err:
			output = err.worker_log.decode(errors='backslashreplace').rstrip()
			raise LuksOperationError(f'Could not {action} "{self.dev_path}": {output}', err.exit_code, output) from err

	@staticmethod
	def _key_input(*keys: KeyMaterial) -> bytes | None:
		"""
		Inline passphrases are written to the child's standard input, one per
		line in the order cryptsetup asks for them. cryptsetup stops reading
		a passphrase at the first newline, so none may contain one.
		"""
		passphrases = [key.passphrase for key in keys if key.passphrase is not None]

		for passphrase in passphrases:
			if b'\n' in passphrase:
				raise ValueError('Passphrases may not contain a newline, use a key file instead')

		if not passphrases:
			return None

		if len(passphrases) == 1:
			return passphrases[0]

		return b'\n'.join(passphrases) + b'\n'

	def create(
		self,
		key: str | bytes | Path,
		cipher: str | None = None,
		label: str | None = None,
		key_is_file: bool = False,
	) -> None:
		config = get_configuration()
		material = KeyMaterial.build(key, key_is_file)
		cipher = cipher or config.cipher

		with self._mutation():
			if not self.dev_path.exists():
				raise LuksPreconditionError(f'Device does not exist: {self.dev_path}')

			if (mapper := self._resolver.resolve(self.dev_path)) is not None:
				raise LuksPreconditionError(f'{self.dev_path} is in use by {mapper.dev_path}')

			info(f'Formatting {self.dev_path} as {config.luks_type} container')

			args = [
				'--batch-mode',
				'--verbose',
				'--type',
				config.luks_type,
				'--cipher',
				cipher,
				'--key-size',
				str(config.key_size),
				'--hash',
				config.hash_type,
				'--iter-time',
				str(config.iter_time),
			]

			if config.luks_type == 'luks2':
				args += ['--pbkdf', config.pbkdf]
				if label:
					args += ['--label', label]
			elif label:
				warn(f'Labels are not supported by {config.luks_type}, ignoring label "{label}"')

			if material.key_file:
				args += ['--key-file', str(material.key_file)]

			args += ['--use-urandom', 'luksFormat', str(self.dev_path)]

			result = self._cryptsetup('format', args, input_data=self._key_input(material))
			debug(f'cryptsetup luksFormat output: {result.decode()}')

	def open(
		self,
		key: str | bytes | Path,
		key_is_file: bool = False,
		mapper_name: str | None = None,
	) -> Path:
		"""
		Maps the decrypted device and returns the mapped path as the kernel
		reports it. The mapping name defaults to the configured prefix
		followed by the device name.
		"""
		material = KeyMaterial.build(key, key_is_file)
		name = mapper_name or self.default_mapper_name()

		with self._mutation():
			snapshot = self._require_snapshot()

			if snapshot.mapper is not None:
				raise LuksPreconditionError(f'{self.dev_path} is already open as {snapshot.mapper.dev_path}')

			debug(f'Unlocking LUKS device {self.dev_path} as {name}')

			args = ['open', str(self.dev_path), name]

			if material.key_file:
				args += ['--key-file', str(material.key_file)]

			self._cryptsetup('open', args, input_data=self._key_input(material))

			if (mapper := self._resolver.resolve(self.dev_path)) is None:
				raise LuksOperationError(f'Opened {self.dev_path} as {name}, but no mapping shows up in its holders')

		return mapper.dev_path

	def _close_mapping(self, mapper: MapperInfo) -> None:
		debug(f'Closing mapped device {mapper.name} of {self.dev_path}')
		self._cryptsetup('close', ['close', mapper.name])

	def close(self) -> None:
		with self._mutation():
			snapshot = self._require_snapshot()

			if snapshot.mapper is None:
				raise LuksPreconditionError(f'{self.dev_path} is not open')

			self._close_mapping(snapshot.mapper)

	@contextmanager
	def unlocked(self, key: str | bytes | Path, key_is_file: bool = False) -> Iterator[Path]:
		mapper_path = self.open(key, key_is_file)

		try:
			yield mapper_path
		finally:
			self.close()

	def _key_change_args(self, action: str, old: KeyMaterial, new: KeyMaterial) -> list[str]:
		args = [action, str(self.dev_path)]

		if new.key_file:
			args.append(str(new.key_file))

		if old.key_file:
			args += ['--key-file', str(old.key_file)]

		return args

	def add_key(
		self,
		old_key: str | bytes | Path,
		new_key: str | bytes | Path,
		old_is_file: bool = False,
		new_is_file: bool = False,
	) -> None:
		old = KeyMaterial.build(old_key, old_is_file)
		new = KeyMaterial.build(new_key, new_is_file)

		with self._mutation():
			snapshot = self._require_snapshot()

			if snapshot.dump.used_key_slots >= MAX_KEY_SLOTS:
				raise LuksPreconditionError(f'No free key slot left on {self.dev_path}')

			self._cryptsetup('add a key to', self._key_change_args('luksAddKey', old, new), input_data=self._key_input(old, new))

	def change_key(
		self,
		old_key: str | bytes | Path,
		new_key: str | bytes | Path,
		old_is_file: bool = False,
		new_is_file: bool = False,
	) -> None:
		old = KeyMaterial.build(old_key, old_is_file)
		new = KeyMaterial.build(new_key, new_is_file)

		with self._mutation():
			self._require_snapshot()
			self._cryptsetup('change a key of', self._key_change_args('luksChangeKey', old, new), input_data=self._key_input(old, new))

	def remove_key(self, key: str | bytes | Path, key_is_file: bool = False) -> None:
		material = KeyMaterial.build(key, key_is_file)

		with self._mutation():
			snapshot = self._require_snapshot()

			if snapshot.dump.used_key_slots <= 1:
				raise LuksPreconditionError(f'Refusing to remove the last key of {self.dev_path}')

			args = ['luksRemoveKey', str(self.dev_path)]

			if material.key_file:
				args.append(str(material.key_file))

			self._cryptsetup('remove a key from', args, input_data=self._key_input(material))

	def kill_slot(self, slot: int) -> None:
		"""
		Erases a key slot without asking for any key. Killing the last
		occupied slot makes the container permanently unopenable.
		"""
		with self._mutation():
			if not 0 <= slot < MAX_KEY_SLOTS:
				raise LuksPreconditionError(f'Key slot {slot} is out of range 0-{MAX_KEY_SLOTS - 1}')

			snapshot = self._require_snapshot()

			if snapshot.dump.version != LuksVersion.Unknown and slot not in snapshot.dump.used_slot_indexes:
				raise LuksPreconditionError(f'Key slot {slot} of {self.dev_path} is already empty')

			if snapshot.dump.used_key_slots == 1:
				warn(f'Killing the last key slot of {self.dev_path}, the container will no longer open')

			self._cryptsetup('kill a key slot of', ['--batch-mode', 'luksKillSlot', str(self.dev_path), str(slot)])

	def test_key(self, key: str | bytes | Path, key_is_file: bool = False) -> int:
		"""
		Returns the key slot the given key unlocks, without mapping anything.
		"""
		material = KeyMaterial.build(key, key_is_file)

		with self._mutation():
			self._require_snapshot()

			args = ['open', '--test-passphrase', '--verbose', str(self.dev_path)]

			if material.key_file:
				args += ['--key-file', str(material.key_file)]

			result = self._cryptsetup('test a key of', args, input_data=self._key_input(material))

		if match := _TEST_KEY_SLOT.search(result.decode()):
			return int(match.group(1))

		raise LuksOperationError(f'Could not determine the key slot unlocked on {self.dev_path}', result.exit_code, result.decode())

	def backup_header(self, path: Path | str) -> None:
		path = Path(path)

		with self._mutation():
			self._require_snapshot()

			if path.exists():
				raise LuksPreconditionError(f'Header backup target already exists: {path}')

			self._cryptsetup('back up the header of', ['luksHeaderBackup', str(self.dev_path), '--header-backup-file', str(path)])
			info(f'Backed up LUKS header of {self.dev_path} to {path}')

	def restore_header(self, path: Path | str) -> None:
		path = Path(path)

		with self._mutation():
			if not path.is_file():
				raise LuksPreconditionError(f'Header backup does not exist: {path}')

			self._cryptsetup(
				'restore the header of',
				['--batch-mode', 'luksHeaderRestore', str(self.dev_path), '--header-backup-file', str(path)],
			)
			info(f'Restored LUKS header of {self.dev_path} from {path}')

	def _header_size(self) -> int:
		fallback = get_configuration().fallback_header_size

		if (snapshot := self.snapshot()) and snapshot.dump.payload_offset:
			return snapshot.dump.payload_offset

		debug(f'Payload offset of {self.dev_path} unknown, overwriting {fallback} bytes')
		return fallback

	def _wipe_signatures(self, backend: StorageBackend) -> None:
		if backend.is_stacked():
			cmd = ['wipefs', '--all', str(self.dev_path)]
		else:
			cmd = ['sgdisk', '--zap-all', str(self.dev_path)]

		try:
			run(cmd)
		except SysCallError as err:
			output = err.worker_log.decode(errors='backslashreplace').rstrip()
			raise LuksOperationError(f'Could not wipe signatures of "{self.dev_path}": {output}', err.exit_code, output) from err

	def _overwrite_header(self, size: int) -> None:
		debug(f'Overwriting {size} bytes of LUKS header on {self.dev_path} with random data')

		with open(self.dev_path, 'r+b') as target:
			target.write(os.urandom(size))
			target.flush()

	def remove(self) -> None:
		"""
		Destroys the container: closes it if it is open, wipes signatures
		and overwrites the header area with random data. Nothing is touched
		if the device or its backend cannot be looked up.
		"""
		with self._mutation():
			try:
				backend = classify_backend(self.dev_path, self._sysfs)
			except SysCallError as err:
				raise DeviceLookupError(f'Could not classify {self.dev_path}: {err}') from err

			header_size = self._header_size()

			info(f'Removing LUKS container on {self.dev_path} ({backend.value})')

			if (mapper := self._resolver.resolve(self.dev_path)) is not None:
				self._close_mapping(mapper)

			self._wipe_signatures(backend)
			self._overwrite_header(header_size)

	def crypttab_entry(self, key_file: Path | None = None, options: list[str] = ['luks']) -> str:
		uuid = self.uuid()

		if uuid is None:
			raise LuksPreconditionError(f'Cannot create a crypttab entry, UUID of {self.dev_path} is unavailable')

		name = self.mapper_name() or self.default_mapper_name()
		key = str(key_file) if key_file else 'none'

		return f'{name} UUID={uuid} {key} {",".join(options)}'
