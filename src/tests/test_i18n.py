"""Translator fallback behaviour; only English ships a catalog."""

from __future__ import annotations

from sapkg.i18n import SUPPORTED_LANGUAGES, Translator


class TestTranslator:
    def test_only_english_is_advertised(self) -> None:
        translator = Translator()
        assert list(SUPPORTED_LANGUAGES) == ["en"]
        assert translator.is_supported("en")
        assert not translator.is_supported("de")
        assert not translator.is_supported("pt-BR")

    def test_language_without_catalog_passes_text_through(self) -> None:
        translator = Translator()
        translator.set_language("de")

        assert translator("✅ Successfully removed '{}'") == "✅ Successfully removed '{}'"
        assert translator.get_language_code() == "en"
