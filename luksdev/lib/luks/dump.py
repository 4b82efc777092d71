"""
Parsing of ``cryptsetup luksDump`` output.

The dump is a semi-structured text report. The top level is a list of
``Key: value`` lines; LUKS2 adds sections introduced by an unindented
``Name:`` line without a value (``Data segments:``, ``Keyslots:``, ...)
whose entries are indented below it.

A LUKS2 dump looks roughly like this (inessential lines removed)::

	LUKS header information
	Version:        2
	Label:          (no label)
	Data segments:
	  0: crypt
	        offset: 16777216 [bytes]
	        cipher: aes-xts-plain64
	Keyslots:
	  0: luks2
	        Key:        512 bits
	Tokens:
"""
from __future__ import annotations

import re
from collections.abc import Iterable

from ..exceptions import LuksDumpError
from ..models.device import SECTOR_SIZE
from ..models.luks import LABEL_NOT_APPLICABLE, MAX_KEY_SLOTS, LuksDump, LuksVersion
from ..output import debug, warn

NO_LABEL = '(no label)'

_V1_SLOT_ENABLED = re.compile(r'^Key Slot (\d+): ENABLED$')
_V1_SLOT_DISABLED = re.compile(r'^Key Slot (\d+): DISABLED$')
_V2_SLOT = re.compile(r'^(\d+): luks2$')
_V2_OFFSET = re.compile(r'^offset:\s*(\d+) \[bytes\]$')
_SECTION = re.compile(r'^([A-Za-z][A-Za-z ]*):$')


def _value_of(lines: Iterable[str], key: str) -> str | None:
	prefix = f'{key}:'
	for line in lines:
		stripped = line.strip()
		if stripped.startswith(prefix):
			return stripped[len(prefix):].strip()
	return None


def _section(lines: list[str], name: str) -> list[str]:
	"""
	Returns the stripped, non-empty lines belonging to a top level section.
	"""
	entries: list[str] = []
	inside = False

	for line in lines:
		if not line.strip():
			continue

		if not line[0].isspace():
			if inside:
				break
			if (match := _SECTION.match(line.rstrip())) and match.group(1) == name:
				inside = True
			continue

		if inside:
			entries.append(line.strip())

	return entries


def _v1_slots(lines: list[str], pattern: re.Pattern[str]) -> list[int]:
	return [int(m.group(1)) for line in lines if (m := pattern.match(line.strip()))]


def _v1_cipher(lines: list[str]) -> str | None:
	name = _value_of(lines, 'Cipher name')
	mode = _value_of(lines, 'Cipher mode')

	if name and mode:
		return f'{name}-{mode}'
	return name


def _v1_payload_offset(lines: list[str]) -> int | None:
	value = _value_of(lines, 'Payload offset')

	if value and value.isdigit():
		# LUKS1 reports the payload offset in 512 byte sectors
		return int(value) * SECTOR_SIZE
	return None


def _v2_payload_offset(segments: list[str]) -> int | None:
	for entry in segments:
		if match := _V2_OFFSET.match(entry):
			return int(match.group(1))
	return None


def _v2_cipher(segments: list[str]) -> str | None:
	return _value_of(segments, 'cipher')


def parse_luks_dump(lines: list[str]) -> LuksDump:
	"""
	Turns the captured lines of a luksDump invocation into a LuksDump.
	Raises LuksDumpError when the version line is missing.
	"""
	version_text = _value_of(lines, 'Version')

	if not version_text:
		raise LuksDumpError('No "Version:" line found in luksDump output')

	version_text = version_text.split()[0]
	version = LuksVersion.from_dump(version_text)

	label = LABEL_NOT_APPLICABLE
	used_slots: list[int] = []
	cipher: str | None = None
	payload_offset: int | None = None

	match version:
		case LuksVersion.Luks1:
			label = LABEL_NOT_APPLICABLE
			used_slots = _v1_slots(lines, _V1_SLOT_ENABLED)
			cipher = _v1_cipher(lines)
			payload_offset = _v1_payload_offset(lines)
		case LuksVersion.Luks2:
			raw_label = _value_of(lines, 'Label')

			if raw_label is None:
				debug('No "Label:" line found in LUKS2 dump, assuming no label')
				label = ''
			elif raw_label == NO_LABEL:
				label = ''
			else:
				label = raw_label

			used_slots = [int(m.group(1)) for entry in _section(lines, 'Keyslots') if (m := _V2_SLOT.match(entry))]
			segments = _section(lines, 'Data segments')
			cipher = _v2_cipher(segments)
			payload_offset = _v2_payload_offset(segments)
		case LuksVersion.Unknown:
			warn(f'Unsupported LUKS version in dump: {version_text}')

	# LUKS2 reports disabled slots by leaving them out of the Keyslots
	# section, so this only ever matches LUKS1 style dumps
	free_slots = _v1_slots(lines, _V1_SLOT_DISABLED)

	if len(used_slots) + len(free_slots) > MAX_KEY_SLOTS:
		raise LuksDumpError(f'luksDump reported {len(used_slots)} used and {len(free_slots)} free key slots, more than {MAX_KEY_SLOTS}')

	return LuksDump(
		version=version,
		version_text=version_text,
		label=label,
		used_key_slots=len(used_slots),
		free_key_slots=len(free_slots),
		used_slot_indexes=tuple(sorted(used_slots)),
		cipher=cipher,
		payload_offset=payload_offset,
	)
