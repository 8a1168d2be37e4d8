"""gettext wrapper for the console messages printed by the `sa` CLI."""

import gettext
import locale
from importlib import resources

DOMAIN = "sapkg"
DEFAULT_LANGUAGE = "en"

# Only languages with a compiled catalog under locale/ belong here
SUPPORTED_LANGUAGES = {
    "en": "English",
}


def _candidates(lang_code: str) -> list:
    """`pt-BR` -> ['pt_BR', 'pt', 'en']"""
    code = lang_code.replace("-", "_")
    languages = [code]
    if "_" in code:
        languages.append(code.split("_")[0])
    if DEFAULT_LANGUAGE not in languages:
        languages.append(DEFAULT_LANGUAGE)
    return languages


class Translator:
    """
    Callable holding the active translation. Without a compiled catalog for
    the requested language, messages pass through unchanged.
    """

    def __init__(self):
        self._translator = lambda s: s
        self.current_lang = DEFAULT_LANGUAGE
        self.set_language()

    def set_language(self, lang_code=None):
        try:
            if lang_code is None:
                lang_code = (locale.getlocale()[0] or "en_US").split(".")[0]
            translation = gettext.translation(
                DOMAIN,
                localedir=str(resources.files(DOMAIN) / "locale"),
                languages=_candidates(lang_code),
                fallback=True,
            )
        except (OSError, ValueError):
            self.current_lang = DEFAULT_LANGUAGE
            self._translator = lambda s: s
            return
        self._translator = translation.gettext
        self.current_lang = translation.info().get("language", DEFAULT_LANGUAGE)

    def __call__(self, text):
        return self._translator(text)

    def get_language_code(self):
        return self.current_lang

    def is_supported(self, code):
        return code.replace("-", "_") in SUPPORTED_LANGUAGES


_ = Translator()
