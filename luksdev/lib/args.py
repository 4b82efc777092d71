import argparse
import getpass
import sys
from argparse import ArgumentParser
from importlib.metadata import version
from pathlib import Path

from pydantic import ValidationError
from pydantic.dataclasses import dataclass as p_dataclass

from .configuration import load_configuration
from .exceptions import DiskError, RequirementError
from .luks.container import LuksContainer
from .output import FormattedOutput, error, info, logger, set_verbose, warn
from .translationhandler import tr


@p_dataclass
class Arguments:
	command: str
	device: Path
	config: Path | None = None
	debug: bool = False
	key_file: Path | None = None
	path: Path | None = None
	mapper_name: str | None = None


class LuksArgumentHandler:
	def __init__(self, argv: list[str] | None = None) -> None:
		self._parser = self._define_arguments()
		self._args = self._parse_args(argv)

	@property
	def args(self) -> Arguments:
		return self._args

	def _get_version(self) -> str:
		try:
			return version('luksdev')
		except Exception:
			return 'luksdev version not found'

	def _define_arguments(self) -> ArgumentParser:
		parser = ArgumentParser(prog='luksdev', formatter_class=argparse.ArgumentDefaultsHelpFormatter)
		parser.add_argument(
			'-v',
			'--version',
			action='version',
			version='%(prog)s ' + self._get_version(),
		)
		parser.add_argument(
			'--config',
			type=Path,
			nargs='?',
			default=None,
			help='JSON configuration file',
		)
		parser.add_argument(
			'--debug',
			action='store_true',
			default=False,
			help='Print debug output',
		)

		commands = parser.add_subparsers(dest='command', required=True)

		for name, help_text in (
			('info', 'Show a summary of the container'),
			('dump', 'Show the raw LUKS header dump'),
			('is-luks', 'Exit with 0 if the device is a LUKS container'),
			('close', 'Close the decrypted mapping'),
		):
			sub = commands.add_parser(name, help=help_text)
			sub.add_argument('device', type=Path)

		for name, help_text in (
			('open', 'Map the decrypted device'),
			('test-key', 'Report the key slot a key unlocks'),
		):
			sub = commands.add_parser(name, help=help_text)
			sub.add_argument('device', type=Path)
			sub.add_argument('--key-file', type=Path, default=None, help='Read the key from a file instead of prompting')
			if name == 'open':
				sub.add_argument('--mapper-name', type=str, default=None, help='Name of the decrypted mapping')

		for name, help_text in (
			('backup-header', 'Write the LUKS header to a file'),
			('restore-header', 'Restore the LUKS header from a file'),
		):
			sub = commands.add_parser(name, help=help_text)
			sub.add_argument('device', type=Path)
			sub.add_argument('path', type=Path)

		return parser

	def _parse_args(self, argv: list[str] | None) -> Arguments:
		argparse_args = vars(self._parser.parse_args(argv))
		args = Arguments(**argparse_args)

		if args.debug:
			set_verbose(True)
			warn(f'Debug output is also written to {logger.path}')

		return args


def _read_key(args: Arguments) -> tuple[str | Path, bool]:
	if args.key_file is not None:
		return args.key_file, True
	return getpass.getpass(tr('Passphrase for {}: ').format(args.device)), False


def _run_command(args: Arguments) -> int:
	container = LuksContainer(args.device)

	match args.command:
		case 'is-luks':
			return 0 if LuksContainer.is_luks_container(args.device) else 1
		case 'info':
			if (snapshot := container.snapshot()) is None:
				error(tr('Unable to read LUKS container {}: {}').format(args.device, container.failure_reason()))
				return 1
			print(container.description())
			print(FormattedOutput.as_table([snapshot]))
		case 'dump':
			if (detail := container.detail()) is None:
				error(tr('Unable to read LUKS container {}: {}').format(args.device, container.failure_reason()))
				return 1
			print(detail)
		case 'open':
			key, is_file = _read_key(args)
			mapper = container.open(key, key_is_file=is_file, mapper_name=args.mapper_name)
			info(tr('Opened {} as {}').format(args.device, mapper))
		case 'close':
			container.close()
			info(tr('Closed {}').format(args.device))
		case 'test-key':
			key, is_file = _read_key(args)
			slot = container.test_key(key, key_is_file=is_file)
			info(tr('Key unlocks key slot {}').format(slot))
		case 'backup-header' | 'restore-header':
			if args.path is None:
				error(tr('No header file given for {}').format(args.command))
				return 1

			if args.command == 'backup-header':
				container.backup_header(args.path)
			else:
				container.restore_header(args.path)

	return 0


def main(argv: list[str] | None = None) -> int:
	handler = LuksArgumentHandler(argv)
	args = handler.args

	try:
		load_configuration(args.config)
		return _run_command(args)
	except (DiskError, RequirementError, ValidationError) as err:
		error(str(err))
		return 1
	except KeyboardInterrupt:
		sys.stderr.write('\n')
		return 1
