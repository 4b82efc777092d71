from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import override

from .device import Size

MAX_KEY_SLOTS = 8
LABEL_NOT_APPLICABLE = 'n/a'


class LuksVersion(Enum):
	Luks1 = '1'
	Luks2 = '2'
	Unknown = 'unknown'

	@classmethod
	def from_dump(cls, value: str) -> LuksVersion:
		try:
			return cls(value)
		except ValueError:
			return cls.Unknown


@dataclass(frozen=True)
class KeyMaterial:
	"""
	A secret able to unlock a key slot, either inline passphrase
	material or the path of a key file.
	"""
	passphrase: bytes | None = None
	key_file: Path | None = None

	def __post_init__(self) -> None:
		if (self.passphrase is None) == (self.key_file is None):
			raise ValueError('Exactly one of passphrase or key_file must be given')

	@classmethod
	def build(cls, key: str | bytes | Path, key_is_file: bool = False) -> KeyMaterial:
		if key_is_file or isinstance(key, Path):
			if isinstance(key, bytes):
				key = key.decode()
			return cls(key_file=Path(key))
		if isinstance(key, str):
			return cls(passphrase=key.encode('UTF-8'))
		return cls(passphrase=key)

	@override
	def __repr__(self) -> str:
		if self.key_file is not None:
			return f'KeyMaterial(key_file={self.key_file})'
		return 'KeyMaterial(passphrase=***)'


@dataclass(frozen=True)
class LuksDump:
	version: LuksVersion
	version_text: str
	label: str
	used_key_slots: int
	free_key_slots: int
	used_slot_indexes: tuple[int, ...] = ()
	cipher: str | None = None
	payload_offset: int | None = None


@dataclass(frozen=True)
class MapperInfo:
	name: str
	dev_path: Path


@dataclass(frozen=True)
class LuksSnapshot:
	"""
	Everything derived about a container in one successful pass.
	"""
	dev_path: Path
	uuid: str
	size: Size
	model: str | None
	dump: LuksDump
	header_dump: tuple[str, ...]
	mapper: MapperInfo | None = None

	@property
	def is_open(self) -> bool:
		return self.mapper is not None

	def table_data(self) -> dict[str, str | int]:
		return {
			'device': str(self.dev_path),
			'uuid': self.uuid,
			'version': self.dump.version_text,
			'label': self.dump.label,
			'used_slots': self.dump.used_key_slots,
			'free_slots': self.dump.free_key_slots,
			'open': 'yes' if self.is_open else 'no',
			'mapper': str(self.mapper.dev_path) if self.mapper else '',
			'size': self.size.binary_unit_highest(),
		}


@dataclass(frozen=True)
class Stale:
	pass


@dataclass(frozen=True)
class Failed:
	reason: str


@dataclass(frozen=True)
class Valid:
	snapshot: LuksSnapshot


CacheState = Stale | Failed | Valid

