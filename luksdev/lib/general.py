from __future__ import annotations

import os
import re
import shlex
import stat
import subprocess
import time
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from shutil import which
from typing import override

from .exceptions import RequirementError, SysCallError
from .output import debug, logger

# https://stackoverflow.com/a/43627833/929999
_VT100_ESCAPE_REGEX = r'\x1B\[[?0-9;]*[a-zA-Z]'
_VT100_ESCAPE_REGEX_BYTES = _VT100_ESCAPE_REGEX.encode()


def locate_binary(name: str) -> str:
	if path := which(name):
		return path
	raise RequirementError(f'Binary {name} does not exist.')


def clear_vt100_escape_codes(data: bytes) -> bytes:
	return re.sub(_VT100_ESCAPE_REGEX_BYTES, b'', data)


@dataclass(frozen=True)
class CommandResult:
	cmd: list[str]
	exit_code: int
	stdout: bytes
	stderr: bytes = b''

	def decode(self, encoding: str = 'utf-8', errors: str = 'backslashreplace', strip: bool = True) -> str:
		val = self.stdout.decode(encoding, errors=errors)

		if strip:
			return val.strip()
		return val

	def lines(self) -> list[str]:
		"""
		Captured output split into lines, with terminal escape codes and
		carriage returns removed. Empty lines are kept so that sectioned
		output (such as luksDump) keeps its shape.
		"""
		cleaned = clear_vt100_escape_codes(self.stdout).replace(b'\r\n', b'\n')
		return cleaned.decode('utf-8', errors='backslashreplace').splitlines()

	def __iter__(self) -> Iterator[str]:
		yield from self.lines()

	@property
	def success(self) -> bool:
		return self.exit_code == 0

	def combined_output(self) -> str:
		return (self.stdout + self.stderr).decode('utf-8', errors='backslashreplace').strip()


def run(
	cmd: list[str],
	input_data: bytes | None = None,
	quiet: bool = False,
	merge_stderr: bool = True,
	check: bool = True,
	environment_vars: dict[str, str] | None = None,
) -> CommandResult:
	"""
	Runs an argument vector and waits for it to finish.

	:param input_data: Bytes written to the child's standard input, used to
		hand over secrets without them showing up in a process listing.
	:param quiet: Do not log the captured output.
	:param merge_stderr: Capture stderr into the same stream as stdout.
	:param check: Raise SysCallError on a non-zero exit code.
	"""
	cmd = list(cmd)

	if cmd and not cmd[0].startswith(('/', './')):
		cmd[0] = locate_binary(cmd[0])

	# define the standard locale for command outputs, the parsers rely on it
	env = {**os.environ, 'LC_ALL': 'C'}
	if environment_vars:
		env.update(environment_vars)

	_log_cmd(cmd)

	proc = subprocess.run(
		cmd,
		input=input_data,
		stdout=subprocess.PIPE,
		stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
		env=env,
	)

	result = CommandResult(
		cmd=cmd,
		exit_code=proc.returncode,
		stdout=proc.stdout or b'',
		stderr=proc.stderr or b'',
	)

	if not quiet:
		debug(f'{shlex.join(cmd)} exited with {result.exit_code}: {result.combined_output()[-500:]}')

	if check and result.exit_code != 0:
		raise SysCallError(
			f'{cmd} exited with abnormal exit code [{result.exit_code}]: {result.combined_output()[-500:]}',
			result.exit_code,
			worker_log=result.stdout + result.stderr,
		)

	return result


class SysCommand:
	"""
	Runs a command without any input on construction, raising SysCallError
	if it fails. Accepts either an argument vector or a plain command string
	which is split like a shell would, without involving a shell.
	"""

	def __init__(
		self,
		cmd: str | list[str],
		quiet: bool = False,
		merge_stderr: bool = True,
		environment_vars: dict[str, str] | None = None,
	):
		if isinstance(cmd, str):
			cmd = shlex.split(cmd)

		self.cmd = cmd
		self.result = run(
			cmd,
			quiet=quiet,
			merge_stderr=merge_stderr,
			environment_vars=environment_vars,
		)

	def __iter__(self) -> Iterator[str]:
		yield from self.result.lines()

	@override
	def __repr__(self) -> str:
		return self.decode(errors='backslashreplace') or ''

	def decode(self, encoding: str = 'utf-8', errors: str = 'backslashreplace', strip: bool = True) -> str:
		return self.result.decode(encoding, errors=errors, strip=strip)

	def output(self, remove_cr: bool = True) -> bytes:
		if remove_cr:
			return self.result.stdout.replace(b'\r\n', b'\n')

		return self.result.stdout

	@property
	def exit_code(self) -> int:
		return self.result.exit_code


def _log_cmd(cmd: list[str]) -> None:
	history_logfile = Path(f'{logger.directory}/cmd_history.txt')

	change_perm = False
	if history_logfile.exists() is False:
		change_perm = True

	try:
		with history_logfile.open('a') as cmd_log:
			cmd_log.write(f'{time.time()} {cmd}\n')

		if change_perm:
			history_logfile.chmod(stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP)
	except (PermissionError, FileNotFoundError):
		# If history_logfile does not exist, ignore the error
		pass

