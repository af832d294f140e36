import pytest

from abacus.core.domain.model_names import MODEL_DEFAULT, normalize_model_name


class TestNormalizeModelName:
    @pytest.mark.parametrize("raw, expected", [
        ("claude-sonnet-4-20250514", "sonnet-4"),
        ("claude-opus-4-5-20251101", "opus-4.5"),
        ("claude-3-5-haiku-20241022", "haiku-3.5"),
        ("claude-4.5-opus", "opus-4.5"),
        ("claude-4-sonnet-high-thinking", "sonnet-4"),
        ("claude-4-sonnet-thinking", "sonnet-4"),
        ("4-sonnet", "sonnet-4"),
        ("4", "sonnet-4"),
        ("claude-4.5-sonnet (Thinking)", "sonnet-4.5"),
        ("claude-sonnet-4-20250514[1m]", "sonnet-4"),
    ])
    def test_canonical_names(self, raw, expected):
        assert normalize_model_name(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "default", "auto", "unknown", "  Auto "])
    def test_default_aliases(self, raw):
        assert normalize_model_name(raw) == MODEL_DEFAULT

    def test_unknown_family_is_lowercased_only(self):
        assert normalize_model_name("GPT-5") == "gpt-5"

    def test_thinking_variant_aggregates_with_base(self):
        assert normalize_model_name("claude-opus-4-5-20251101 (T)") == normalize_model_name("claude-opus-4-5-20251101")
