import json
import uuid
from collections.abc import Iterator
from pathlib import Path

import pytest
from pytest import MonkeyPatch

from luksdev.lib.configuration import LuksConfiguration
from luksdev.lib.disk.device import BlockDevice
from luksdev.lib.exceptions import SysCallError
from luksdev.lib.general import CommandResult
from luksdev.lib.models.device import Size, Unit
from luksdev.lib.output import set_verbose
from luksdev.lib.storage import storage

_VALUE_OPTIONS = {'--type', '--cipher', '--key-size', '--hash', '--iter-time', '--pbkdf', '--label', '--key-file', '--header-backup-file'}
_ACTIONS = {
	'isLuks',
	'luksUUID',
	'luksDump',
	'luksFormat',
	'open',
	'close',
	'luksAddKey',
	'luksChangeKey',
	'luksRemoveKey',
	'luksKillSlot',
	'luksHeaderBackup',
	'luksHeaderRestore',
}


class FakeCryptsetup:
	"""
	Stands in for luksdev.lib.general.run. Keeps the state of a single
	simulated LUKS device and mirrors open mappings into a sysfs tree.
	"""

	def __init__(self, dev_path: Path, sysfs_root: Path) -> None:
		self.dev_path = dev_path
		self.sysfs_root = sysfs_root
		self.calls: list[list[str]] = []
		self.inputs: list[bytes | None] = []

		self.formatted = False
		self.version = '2'
		self.label = ''
		self.cipher = ''
		self.uuid = ''
		self.slots: dict[int, bytes] = {}
		self.mapped: str | None = None
		self.mirror_sysfs = True

		self.holders_dir.mkdir(parents=True, exist_ok=True)

	@property
	def holders_dir(self) -> Path:
		return self.sysfs_root / 'class' / 'block' / self.dev_path.name / 'holders'

	def actions(self) -> list[str]:
		names = []
		for cmd in self.calls:
			if cmd[0] in ('wipefs', 'sgdisk'):
				names.append(cmd[0])
			else:
				names.append(next(arg for arg in cmd[1:] if arg in _ACTIONS))
		return names

	def __call__(
		self,
		cmd: list[str],
		input_data: bytes | None = None,
		quiet: bool = False,
		merge_stderr: bool = True,
		check: bool = True,
		environment_vars: dict[str, str] | None = None,
	) -> CommandResult:
		cmd = list(cmd)
		self.calls.append(cmd)
		self.inputs.append(input_data)

		code, output = self._dispatch(cmd, input_data)
		result = CommandResult(cmd=cmd, exit_code=code, stdout=output.encode())

		if check and code != 0:
			raise SysCallError(f'{cmd} exited with abnormal exit code [{code}]: {output}', code, worker_log=result.stdout)

		return result

	def _parse(self, cmd: list[str]) -> tuple[str, dict[str, str], set[str], list[str]]:
		options: dict[str, str] = {}
		flags: set[str] = set()
		positionals: list[str] = []
		action = ''

		args = iter(cmd[1:])
		for arg in args:
			if arg in _VALUE_OPTIONS:
				options[arg] = next(args)
			elif arg.startswith('--'):
				flags.add(arg)
			elif not action and arg in _ACTIONS:
				action = arg
			else:
				positionals.append(arg)

		return action, options, flags, positionals

	@staticmethod
	def _stdin_keys(input_data: bytes | None) -> list[bytes]:
		if not input_data:
			return []
		keys = input_data.split(b'\n')
		if input_data.endswith(b'\n'):
			keys = keys[:-1]
		return keys

	def _slot_for(self, key: bytes) -> int | None:
		for slot, stored in sorted(self.slots.items()):
			if stored == key:
				return slot
		return None

	def _dispatch(self, cmd: list[str], input_data: bytes | None) -> tuple[int, str]:
		if cmd[0] in ('wipefs', 'sgdisk'):
			return 0, ''

		action, options, flags, positionals = self._parse(cmd)
		stdin_keys = self._stdin_keys(input_data)

		def existing_key() -> bytes:
			if key_file := options.get('--key-file'):
				return Path(key_file).read_bytes()
			return stdin_keys.pop(0)

		not_luks = (1, f'Device {self.dev_path} is not a valid LUKS device.')

		match action:
			case 'isLuks':
				return (0, '') if self.formatted else not_luks
			case 'luksUUID':
				return (0, f'{self.uuid}\n') if self.formatted else not_luks
			case 'luksDump':
				return (0, self.dump()) if self.formatted else not_luks
			case 'luksFormat':
				self.version = '1' if options.get('--type') == 'luks1' else '2'
				self.label = options.get('--label', '')
				self.cipher = options.get('--cipher', 'aes-xts-plain64')
				self.uuid = str(uuid.uuid4())
				self.slots = {0: existing_key()}
				self.formatted = True
				return 0, 'Key slot 0 created.\nCommand successful.\n'

		if not self.formatted:
			return not_luks

		match action:
			case 'open':
				slot = self._slot_for(existing_key())
				if slot is None:
					return 2, 'No key available with this passphrase.\n'
				if '--test-passphrase' in flags:
					return 0, f'Key slot {slot} unlocked.\nCommand successful.\n'
				if self.mapped is not None:
					return 5, f'Device {positionals[1]} already exists.\n'
				self.mapped = positionals[1]
				if not self.mirror_sysfs:
					return 0, ''
				(self.holders_dir / 'dm-0').touch()
				dm_dir = self.sysfs_root / 'class' / 'block' / 'dm-0' / 'dm'
				dm_dir.mkdir(parents=True, exist_ok=True)
				(dm_dir / 'name').write_text(f'{self.mapped}\n')
				return 0, ''
			case 'close':
				if self.mapped != positionals[0]:
					return 4, f'Device {positionals[0]} is not active.\n'
				self.mapped = None
				(self.holders_dir / 'dm-0').unlink(missing_ok=True)
				return 0, ''
			case 'luksAddKey' | 'luksChangeKey':
				slot = self._slot_for(existing_key())
				new_key = Path(positionals[1]).read_bytes() if len(positionals) > 1 else stdin_keys.pop(0)
				if slot is None:
					return 2, 'No key available with this passphrase.\n'
				if action == 'luksChangeKey':
					self.slots[slot] = new_key
					return 0, f'Key slot {slot} changed.\n'
				free = [n for n in range(8) if n not in self.slots]
				if not free:
					return 1, 'All key slots full.\n'
				self.slots[free[0]] = new_key
				return 0, f'Key slot {free[0]} created.\n'
			case 'luksRemoveKey':
				key = Path(positionals[1]).read_bytes() if len(positionals) > 1 else stdin_keys.pop(0)
				slot = self._slot_for(key)
				if slot is None:
					return 2, 'No key available with this passphrase.\n'
				del self.slots[slot]
				return 0, ''
			case 'luksKillSlot':
				slot = int(positionals[1])
				if slot not in self.slots:
					return 1, f'Keyslot {slot} is not active.\n'
				del self.slots[slot]
				return 0, ''
			case 'luksHeaderBackup':
				target = Path(options['--header-backup-file'])
				target.write_text(json.dumps(self._header()))
				return 0, ''
			case 'luksHeaderRestore':
				source = Path(options['--header-backup-file'])
				try:
					header = json.loads(source.read_text())
				except ValueError:
					return 1, f'Device {source} is not a valid LUKS device.\n'
				self.version = header['version']
				self.label = header['label']
				self.uuid = header['uuid']
				self.slots = {int(slot): key.encode() for slot, key in header['slots'].items()}
				return 0, ''

		raise AssertionError(f'Unexpected command: {cmd}')

	def _header(self) -> dict[str, object]:
		return {
			'version': self.version,
			'label': self.label,
			'uuid': self.uuid,
			'slots': {str(slot): key.decode() for slot, key in self.slots.items()},
		}

	def dump(self) -> str:
		if self.version == '1':
			name, mode = self.cipher.split('-', 1)
			lines = [
				f'LUKS header information for {self.dev_path}',
				'',
				'Version:       \t1',
				f'Cipher name:   \t{name}',
				f'Cipher mode:   \t{mode}',
				'Hash spec:     \tsha512',
				'Payload offset:\t4096',
				'MK bits:       \t512',
				f'UUID:          \t{self.uuid}',
				'',
			]
			for slot in range(8):
				if slot in self.slots:
					lines += [f'Key Slot {slot}: ENABLED', '\tIterations:         \t1000', '\tAF stripes:            \t4000']
				else:
					lines.append(f'Key Slot {slot}: DISABLED')
			return '\n'.join(lines) + '\n'

		lines = [
			'LUKS header information',
			'Version:       \t2',
			'Epoch:         \t3',
			'Metadata area: \t16384 [bytes]',
			'Keyslots area: \t16744448 [bytes]',
			f'UUID:          \t{self.uuid}',
			f'Label:         \t{self.label or "(no label)"}',
			'Subsystem:     \t(no subsystem)',
			'Flags:       \t(no flags)',
			'',
			'Data segments:',
			'  0: crypt',
			'\toffset: 16777216 [bytes]',
			'\tlength: (whole device)',
			f'\tcipher: {self.cipher}',
			'\tsector: 512 [bytes]',
			'',
			'Keyslots:',
		]
		for slot in sorted(self.slots):
			lines += [f'  {slot}: luks2', '\tKey:        512 bits', '\tPriority:   normal']
		lines += ['Tokens:', 'Digests:', '  0: pbkdf2', '\tHash:       sha256']
		return '\n'.join(lines) + '\n'


@pytest.fixture(scope='session')
def data_dir() -> Path:
	return Path(__file__).parent / 'data'


@pytest.fixture(scope='session')
def luks1_dump(data_dir: Path) -> list[str]:
	return (data_dir / 'luks1_dump.txt').read_text().splitlines()


@pytest.fixture(scope='session')
def luks2_dump(data_dir: Path) -> list[str]:
	return (data_dir / 'luks2_dump.txt').read_text().splitlines()


@pytest.fixture(scope='session')
def luks2_no_label_dump(data_dir: Path) -> list[str]:
	return (data_dir / 'luks2_no_label_dump.txt').read_text().splitlines()


@pytest.fixture
def sysfs_root(tmp_path: Path) -> Path:
	root = tmp_path / 'sys'
	root.mkdir()
	return root


@pytest.fixture(autouse=True)
def luks_config(tmp_path: Path, sysfs_root: Path) -> Iterator[LuksConfiguration]:
	config = LuksConfiguration(
		log_path=tmp_path / 'log',
		sysfs_root=sysfs_root,
		iter_time=1000,
	)
	storage['config'] = config
	yield config
	storage.pop('config', None)
	set_verbose(False)


@pytest.fixture
def device(tmp_path: Path) -> Path:
	dev_dir = tmp_path / 'dev'
	dev_dir.mkdir()
	dev_path = dev_dir / 'sdb1'
	dev_path.write_bytes(bytes(64 * 1024))
	return dev_path


@pytest.fixture
def block_device(device: Path) -> BlockDevice:
	return BlockDevice(
		path=device,
		size=Size(1, Unit.GiB),
		model='QEMU HARDDISK',
		type='part',
		parent='sdb',
	)


@pytest.fixture
def cryptsetup(monkeypatch: MonkeyPatch, device: Path, sysfs_root: Path, block_device: BlockDevice) -> FakeCryptsetup:
	fake = FakeCryptsetup(device, sysfs_root)

	monkeypatch.setattr('luksdev.lib.luks.container.run', fake)
	monkeypatch.setattr('luksdev.lib.luks.container.get_block_device', lambda path: block_device)
	monkeypatch.setattr('luksdev.lib.disk.backend.get_block_device', lambda path: block_device)

	return fake
