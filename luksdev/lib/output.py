import logging
import os
import sys
import unicodedata
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .storage import storage

if TYPE_CHECKING:
	from _typeshed import DataclassInstance


def _display_width(text: str) -> int:
	# east asian wide/full-width characters take two terminal cells
	return sum(2 if unicodedata.east_asian_width(c) in 'FW' else 1 for c in text)


def _ljust(text: str, width: int) -> str:
	return text + ' ' * max(0, width - _display_width(text))


def _rjust(text: str, width: int) -> str:
	return ' ' * max(0, width - _display_width(text)) + text


class FormattedOutput:
	@classmethod
	def _get_values(
		cls,
		o: 'DataclassInstance',
		class_formatter: str | Callable | None = None,  # type: ignore[type-arg]
		filter_list: list[str] = [],
	) -> dict[str, Any]:
		"""
		Returns the values of an object as a dictionary, either through a
		formatting method (called by reference or looked up by name),
		a table_data() method or the plain dataclass fields.
		"""
		if class_formatter:
			if callable(class_formatter):
				return class_formatter(o, filter_list)
			elif hasattr(o, class_formatter) and callable(getattr(o, class_formatter)):
				func = getattr(o, class_formatter)
				return func(filter_list)

			raise ValueError('Unsupported formatting call')
		elif hasattr(o, 'table_data'):
			return o.table_data()
		elif is_dataclass(o):
			return asdict(o)
		else:
			return o.__dict__  # type: ignore[unreachable]

	@classmethod
	def as_table(
		cls,
		obj: list[Any],
		class_formatter: str | Callable | None = None,  # type: ignore[type-arg]
		filter_list: list[str] = [],
		capitalize: bool = False,
	) -> str:
		"""
		Formats a list of records as a table, one record per line.
		filter_list restricts (and orders) the columns shown.
		"""
		raw_data = [cls._get_values(o, class_formatter, filter_list) for o in obj]

		# determine the maximum column size
		column_width: dict[str, int] = {}
		for o in raw_data:
			for k, v in o.items():
				if not filter_list or k in filter_list:
					column_width.setdefault(k, 0)
					column_width[k] = max([column_width[k], _display_width(str(v)), len(k)])

		if not filter_list:
			filter_list = list(column_width.keys())

		output = ''
		key_list = []
		for key in filter_list:
			width = column_width[key]
			key = key.replace('_', ' ')

			if capitalize:
				key = key.capitalize()

			key_list.append(_ljust(key, width))

		output += ' | '.join(key_list) + '\n'
		output += '-' * len(output) + '\n'

		for record in raw_data:
			obj_data = []
			for key in filter_list:
				width = column_width.get(key, len(key))
				value = record.get(key, '')

				if isinstance(value, int | float) or (isinstance(value, str) and value.isnumeric()):
					obj_data.append(_rjust(str(value), width))
				else:
					obj_data.append(_ljust(str(value), width))

			output += ' | '.join(obj_data) + '\n'

		return output


class Logger:
	def __init__(self, path: Path | None = None) -> None:
		self._path = path

	@property
	def directory(self) -> Path:
		if self._path is not None:
			return self._path
		if config := storage.get('config'):
			return config.log_path
		return Path('/var/log/luksdev')

	@property
	def path(self) -> Path:
		return self.directory / 'luksdev.log'

	def _check_permissions(self) -> None:
		log_file = self.path

		try:
			self.directory.mkdir(exist_ok=True, parents=True)
			log_file.touch(exist_ok=True)

			with log_file.open('a') as f:
				f.write('')
		except PermissionError:
			# Fallback to creating the log file in the current folder
			self._path = Path('./').absolute()

			warn(f'Not enough permission to place log file at {log_file}, creating it in {self.path} instead')

	def log(self, level: int, content: str) -> None:
		self._check_permissions()

		with self.path.open('a') as f:
			ts = _timestamp()
			level_name = logging.getLevelName(level)
			f.write(f'[{ts}] - {level_name} - {content}\n')


logger = Logger()


def _supports_color() -> bool:
	if sys.platform == 'win32' and 'ANSICON' not in os.environ:
		return False
	return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


_LEVEL_COLORS = {
	logging.DEBUG: '90',
	logging.INFO: '37',
	logging.WARNING: '33',
	logging.ERROR: '31',
}


def _colorize(text: str, level: int) -> str:
	return f'\033[{_LEVEL_COLORS.get(level, "37")}m{text}\033[0m'


def _timestamp() -> str:
	return datetime.now(tz=UTC).strftime('%Y-%m-%d %H:%M:%S')


def info(*msgs: str) -> None:
	log(*msgs, level=logging.INFO)


def debug(*msgs: str) -> None:
	log(*msgs, level=logging.DEBUG)


def error(*msgs: str) -> None:
	log(*msgs, level=logging.ERROR)


def warn(*msgs: str) -> None:
	log(*msgs, level=logging.WARNING)


def log(*msgs: str, level: int = logging.INFO) -> None:
	"""
	Every message lands in the log file. Debug messages are only
	echoed to stderr in verbose mode.
	"""
	text = ' '.join(str(x) for x in msgs)

	logger.log(level, text)

	if level == logging.DEBUG and not verbose_output():
		return

	if _supports_color():
		text = _colorize(text, level)

	sys.stderr.write(f'{text}\n')
	sys.stderr.flush()


_verbose = False


def set_verbose(enabled: bool) -> None:
	global _verbose
	_verbose = enabled


def verbose_output() -> bool:
	return _verbose
