from __future__ import annotations

import gettext
import os
from pathlib import Path

from .output import debug

_DOMAIN = 'luksdev'


class TranslationHandler:
	def __init__(self) -> None:
		self._translation: gettext.NullTranslations = gettext.NullTranslations()
		self.activate(None)

	def _get_locales_dir(self) -> Path:
		"""
		Get the locales directory path
		"""
		return Path(__file__).parent.parent / 'locales'

	def activate(self, language: str | None) -> None:
		"""
		Switch to the catalogue of the given language, or to whatever the
		environment asks for (LANGUAGE, LC_ALL, LC_MESSAGES, LANG) when
		no language is given. Falls back to the untranslated strings.
		"""
		languages = [language] if language else None

		self._translation = gettext.translation(
			_DOMAIN,
			localedir=self._get_locales_dir(),
			languages=languages,
			fallback=True,
		)

		if isinstance(self._translation, gettext.GNUTranslations):
			debug(f'Activated translation catalogue for {language or os.environ.get("LANG", "default")}')

	def translate(self, message: str) -> str:
		return self._translation.gettext(message)


translation_handler = TranslationHandler()


def tr(message: str) -> str:
	return translation_handler.translate(message)
