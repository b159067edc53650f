"""Tests for text normalization and similarity helpers."""

from src.utils.text import (
    clean_description,
    contains_phrase,
    edit_similarity,
    extract_merchant_name,
    jaro_winkler,
    merchant_key,
    name_variations,
    normalize_text,
    strip_diacritics,
)


class TestNormalization:
    """Tests for diacritic stripping and normalization."""

    def test_strip_diacritics(self) -> None:
        assert strip_diacritics("Plată Utilități ÎNCASARE") == "Plata Utilitati INCASARE"

    def test_normalize_text(self) -> None:
        assert normalize_text("  McDonald's, BUCUREȘTI!! ") == "mcdonald s bucuresti"

    def test_clean_description_drops_boilerplate(self) -> None:
        cleaned = clean_description("PLATA POS 12345678 LIDL *BUCURESTI#")
        assert cleaned == "LIDL BUCURESTI"

    def test_merchant_key_ignores_digits_and_case(self) -> None:
        assert merchant_key("POS Kaufland 0412") == merchant_key("kaufland")
        assert merchant_key("Mega Image 23") == "mega image"


class TestExtractMerchantName:
    """Tests for extract_merchant_name."""

    def test_first_meaningful_words(self) -> None:
        name = extract_merchant_name("CUMPARARE POS 4402 OMV PETROM STATIA 12 BUCURESTI")
        assert name == "OMV PETROM STATIA"

    def test_skips_stop_words_and_short_tokens(self) -> None:
        assert extract_merchant_name("plata la de Farmacia Catena") == "Farmacia Catena"

    def test_falls_back_to_description(self) -> None:
        assert extract_merchant_name("POS 12") == "POS 12"


class TestNameVariations:
    """Tests for name_variations."""

    def test_company_suffix_stripped(self) -> None:
        variations = name_variations("Dedeman SRL")
        assert "dedeman srl" in variations
        assert "dedeman" in variations
        assert "ds" not in variations

    def test_initials_of_multi_word_names(self) -> None:
        assert "map" in name_variations("Magazin Alimentar Popescu SRL")
        assert "mi" in name_variations("Mega Image")
        assert name_variations("McDonald's") == {"mcdonald s"}


class TestSimilarity:
    """Tests for the phrase and similarity helpers."""

    def test_contains_phrase_whole_words(self) -> None:
        assert contains_phrase("lidl bucuresti", "lidl")
        assert not contains_phrase("lidlx bucuresti", "lidl")
        assert contains_phrase("plata mega image sector", "mega image")
        assert not contains_phrase("anything", "")

    def test_jaro_winkler_prefix_bonus(self) -> None:
        assert jaro_winkler("kaufland", "kaufland") == 1.0
        assert jaro_winkler("kaufland", "kauflnad") > jaro_winkler("kaufland", "dnalfuak")
        assert jaro_winkler("", "x") == 0.0

    def test_edit_similarity(self) -> None:
        assert edit_similarity("banca", "banca") == 1.0
        assert edit_similarity("transilvania", "transilvanla") > 0.9
        assert edit_similarity("", "") == 1.0
