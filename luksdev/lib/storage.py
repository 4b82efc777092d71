# Keeping this in a dict ensures that the active configuration is
# shared across imports without passing it through every call.
from typing import TYPE_CHECKING, NotRequired, TypedDict

if TYPE_CHECKING:
	from luksdev.lib.configuration import LuksConfiguration


class _StorageDict(TypedDict):
	config: NotRequired['LuksConfiguration']


storage: _StorageDict = {}
