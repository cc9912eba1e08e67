"""Test input validation logic."""
import pytest
from pydantic import ValidationError
from pronunciation_mcp import (
    ForvoWordPronunciationsInput,
    ForvoStandardPronunciationInput,
    ForvoDownloadInput,
    ForvoSearchInput,
    ForvoLanguageListInput,
    JPodAudioInput,
    JPodBatchInput,
    MAX_BATCH_ITEMS,
)


class TestForvoWordPronunciationsInput:
    """Test word pronunciations input validation."""

    def test_defaults(self):
        """Should fill documented defaults for omitted fields."""
        result = ForvoWordPronunciationsInput(word="猫")
        assert result.word == "猫"
        assert result.language is None
        assert result.sex is None
        assert result.min_rate is None
        assert result.order == "rate-desc"
        assert result.limit == 5

    def test_whitespace_stripped(self):
        """Should strip whitespace from word."""
        result = ForvoWordPronunciationsInput(word="  hello  ")
        assert result.word == "hello"

    def test_empty_word_rejected(self):
        """Should reject empty or whitespace-only word."""
        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="")

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="   ")

    def test_missing_word_rejected(self):
        """Should reject missing word."""
        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput()

    def test_word_length_bounds(self):
        """Should accept 200 characters and reject 201."""
        assert len(ForvoWordPronunciationsInput(word="a" * 200).word) == 200

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="a" * 201)

    def test_language_length(self):
        """Should require a 2-5 character language code."""
        assert ForvoWordPronunciationsInput(word="cat", language="en").language == "en"
        assert ForvoWordPronunciationsInput(word="cat", language="zh-tw").language == "zh-tw"

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", language="e")

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", language="english")

    def test_invalid_sex_lists_allowed_values(self):
        """Should reject unknown sex with a message naming the allowed set."""
        with pytest.raises(ValidationError) as exc_info:
            ForvoWordPronunciationsInput(word="cat", sex="x")

        assert "sex must be one of: m, f" in str(exc_info.value)

    def test_invalid_order_lists_allowed_values(self):
        """Should reject unknown order with a message naming the allowed set."""
        with pytest.raises(ValidationError) as exc_info:
            ForvoWordPronunciationsInput(word="cat", order="popular")

        assert "order must be one of: rate-desc, rate-asc, date-desc, date-asc" in str(exc_info.value)

    def test_limit_range(self):
        """Should validate limit range 1-50."""
        assert ForvoWordPronunciationsInput(word="cat", limit=50).limit == 50

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", limit=0)

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", limit=51)

    def test_limit_must_be_integer(self):
        """Should reject fractional limits."""
        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", limit=2.5)

    def test_min_rate_range(self):
        """Should validate min_rate range 0-5."""
        assert ForvoWordPronunciationsInput(word="cat", min_rate=0).min_rate == 0

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", min_rate=6)

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", min_rate=-1)

    def test_country_normalized(self):
        """Should upper-case country codes and require exactly 3 characters."""
        assert ForvoWordPronunciationsInput(word="cat", country="jpn").country == "JPN"

        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput(word="cat", country="JP")

    def test_null_arguments_use_defaults(self):
        """Explicit nulls should behave like omitted arguments."""
        result = ForvoWordPronunciationsInput.model_validate(
            {"word": "cat", "order": None, "limit": None, "sex": None}
        )
        assert result.order == "rate-desc"
        assert result.limit == 5
        assert result.sex is None

    def test_unknown_argument_rejected(self):
        """Should reject arguments that are not part of the schema."""
        with pytest.raises(ValidationError):
            ForvoWordPronunciationsInput.model_validate({"word": "cat", "speaker": "akiko"})


class TestOtherForvoInputs:
    """Test the remaining Forvo input models."""

    def test_standard_pronunciation_requires_word(self):
        with pytest.raises(ValidationError):
            ForvoStandardPronunciationInput(word="")

    def test_download_sex_validation(self):
        assert ForvoDownloadInput(word="cat", sex="m").sex == "m"

        with pytest.raises(ValidationError, match="sex must be one of: m, f"):
            ForvoDownloadInput(word="cat", sex="male")

    def test_search_default_limit(self):
        assert ForvoSearchInput(search="neko").limit == 10

    def test_language_list_defaults(self):
        result = ForvoLanguageListInput()
        assert result.order == "name"
        assert result.min_pronunciations == 100

    def test_language_list_order_validation(self):
        with pytest.raises(ValidationError, match="order must be one of: name, code"):
            ForvoLanguageListInput(order="size")

    def test_language_list_min_pronunciations_range(self):
        with pytest.raises(ValidationError):
            ForvoLanguageListInput(min_pronunciations=-1)

        with pytest.raises(ValidationError):
            ForvoLanguageListInput(min_pronunciations=1_000_000)


class TestJPodInputs:
    """Test JapanesePod101 input validation."""

    def test_valid_pair(self):
        result = JPodAudioInput(kanji="猫", kana="ねこ")
        assert result.kanji == "猫"
        assert result.kana == "ねこ"

    def test_katakana_reading_accepted(self):
        result = JPodAudioInput(kanji="コーヒー", kana="コーヒー")
        assert result.kana == "コーヒー"

    def test_half_width_katakana_normalized(self):
        """Should NFKC-normalize half-width katakana to full-width."""
        result = JPodAudioInput(kanji="ﾈｺ", kana="ﾈｺ")
        assert result.kanji == "ネコ"
        assert result.kana == "ネコ"

    def test_romaji_reading_rejected(self):
        with pytest.raises(ValidationError, match="hiragana or katakana"):
            JPodAudioInput(kanji="猫", kana="neko")

    def test_missing_kana_rejected(self):
        with pytest.raises(ValidationError):
            JPodAudioInput(kanji="猫")

    def test_batch_requires_items(self):
        with pytest.raises(ValidationError):
            JPodBatchInput(items=[])

    def test_batch_cap(self):
        """Should accept exactly the cap and reject one more."""
        pair = {"kanji": "猫", "kana": "ねこ"}
        assert len(JPodBatchInput(items=[pair] * MAX_BATCH_ITEMS).items) == MAX_BATCH_ITEMS

        with pytest.raises(ValidationError):
            JPodBatchInput(items=[pair] * (MAX_BATCH_ITEMS + 1))

    def test_batch_items_validated_individually(self):
        """One bad element should fail the whole batch."""
        with pytest.raises(ValidationError) as exc_info:
            JPodBatchInput(items=[{"kanji": "猫", "kana": "ねこ"}, {"kanji": "犬", "kana": "inu"}])

        assert exc_info.value.errors()[0]["loc"][:2] == ("items", 1)
