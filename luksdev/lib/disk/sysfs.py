from pathlib import Path

from ..configuration import get_configuration
from ..output import debug


class SysFs:
	"""
	Read access to the small attribute files and directory listings the
	kernel exposes under /sys. The root can be moved, which is what the
	tests do to present a fabricated block device topology.
	"""

	def __init__(self, root: Path | None = None) -> None:
		self._root = root

	@property
	def root(self) -> Path:
		if self._root is not None:
			return self._root
		return get_configuration().sysfs_root

	def read_attr(self, path: Path | str) -> str | None:
		attr = self.root / path

		try:
			return attr.read_text().strip()
		except (FileNotFoundError, NotADirectoryError):
			return None
		except OSError as err:
			debug(f'Could not read sysfs attribute {attr}: {err}')
			return None

	def list_dir(self, path: Path | str) -> list[str] | None:
		"""
		Returns the sorted entry names of a directory, or None when
		the directory does not exist.
		"""
		directory = self.root / path

		if not directory.is_dir():
			return None

		return sorted(entry.name for entry in directory.iterdir())
