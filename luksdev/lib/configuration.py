import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from .exceptions import RequirementError
from .storage import storage

DEFAULT_ITER_TIME = 10000
CONFIG_ENV_VAR = 'LUKSDEV_CONFIG'


class LuksConfiguration(BaseModel):
	cryptsetup_bin: str = 'cryptsetup'
	luks_type: str = 'luks2'
	cipher: str = 'aes-xts-plain64'
	key_size: int = 512
	hash_type: str = 'sha512'
	pbkdf: str = 'argon2id'
	iter_time: int = DEFAULT_ITER_TIME
	mapper_prefix: str = 'luks-'
	fallback_header_size: int = Field(default=4096, gt=0)
	sysfs_root: Path = Path('/sys')
	dev_root: Path = Path('/dev')
	log_path: Path = Path('/var/log/luksdev')
	device_locking: bool = True

	@field_validator('luks_type')
	@classmethod
	def check_luks_type(cls, v: str) -> str:
		if v not in ('luks1', 'luks2'):
			raise ValueError(f'Unsupported LUKS type: {v}')
		return v

	@property
	def mapper_root(self) -> Path:
		return self.dev_root / 'mapper'


def load_configuration(path: Path | None = None) -> LuksConfiguration:
	"""
	Reads a JSON configuration file and makes it the active configuration.
	When no path is given the LUKSDEV_CONFIG environment variable is consulted,
	and if that is unset as well the defaults are used.
	"""
	if path is None and (env_path := os.environ.get(CONFIG_ENV_VAR)):
		path = Path(env_path)

	if path is None:
		config = LuksConfiguration()
	else:
		if not path.exists():
			raise RequirementError(f'Configuration file does not exist: {path}')

		config = LuksConfiguration.model_validate_json(path.read_text())

	storage['config'] = config
	return config


def get_configuration() -> LuksConfiguration:
	if 'config' not in storage:
		return load_configuration()
	return storage['config']
