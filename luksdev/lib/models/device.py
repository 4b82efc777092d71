from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import override

from pydantic import BaseModel, Field, field_validator

SECTOR_SIZE = 512


class Unit(Enum):
	B = 1  # byte
	kB = 1000**1  # kilobyte
	MB = 1000**2  # megabyte
	GB = 1000**3  # gigabyte
	TB = 1000**4  # terabyte

	KiB = 1024**1  # kibibyte
	MiB = 1024**2  # mebibyte
	GiB = 1024**3  # gibibyte
	TiB = 1024**4  # tebibyte
	PiB = 1024**5  # pebibyte

	@staticmethod
	def get_binary_units() -> list[Unit]:
		return [u for u in Unit if 'i' in u.name or u.name == 'B']


@dataclass(frozen=True)
class Size:
	value: int
	unit: Unit = Unit.B

	def _normalize(self) -> int:
		"""
		will normalize the value of the unit to Byte
		"""
		return int(self.value * self.unit.value)

	def binary_unit_highest(self, include_unit: bool = True) -> str:
		size = float(self._normalize())
		unit = Unit.B

		for binary_unit in Unit.get_binary_units()[1:]:
			if size < 1024:
				break
			size /= 1024
			unit = binary_unit

		formatted_size = f'{size:.1f}'

		if formatted_size.endswith('.0'):
			formatted_size = formatted_size[:-2]

		if not include_unit:
			return formatted_size

		return f'{formatted_size} {unit.name}'

	@override
	def __eq__(self, other: object) -> bool:
		if not isinstance(other, Size):
			return NotImplemented

		return self._normalize() == other._normalize()

	def __lt__(self, other: Size) -> bool:
		return self._normalize() < other._normalize()

	@override
	def __hash__(self) -> int:
		return hash(self._normalize())


class LsblkInfo(BaseModel):
	name: str
	path: Path
	pkname: str | None = None
	size: Size
	type: str | None = None  # may be None for strange behavior with md devices
	model: str | None = None
	fstype: str | None = None
	uuid: str | None = None
	children: list[LsblkInfo] = Field(default_factory=list)

	@field_validator('size', mode='before')
	@classmethod
	def convert_size(cls, v: int | Size) -> Size:
		if isinstance(v, Size):
			return v
		return Size(int(v), Unit.B)

	@field_validator('model', mode='before')
	@classmethod
	def strip_model(cls, v: str | None) -> str | None:
		if v is None:
			return None
		return v.strip() or None

	@classmethod
	def fields(cls) -> list[str]:
		return [name for name in cls.model_fields if name != 'children']


class LsblkOutput(BaseModel):
	blockdevices: list[LsblkInfo]
