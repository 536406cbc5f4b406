"""
test_similarity.py - 文件名相似度测试
"""

import pytest

from assetmend.reconcile.similarity import (
    calculate_similarity,
    edit_similarity,
    levenshtein,
    normalize_filename,
    similar_text,
)


class TestNormalizeFilename:
    def test_lowercases_and_strips_symbols(self):
        assert normalize_filename("My Photo (1).JPG") == "myphoto1.jpg"

    def test_keeps_dots_and_digits(self):
        assert normalize_filename("IMG_2024.01.tar.gz") == "img2024.01.tar.gz"

    def test_none_is_empty(self):
        assert normalize_filename(None) == ""


class TestLevenshtein:
    @pytest.mark.parametrize(
        "a, b, expected",
        [
            ("kitten", "sitting", 3),
            ("", "abc", 3),
            ("abc", "", 3),
            ("same", "same", 0),
            ("jpg", "png", 2),
        ],
    )
    def test_distance(self, a, b, expected):
        assert levenshtein(a, b) == expected

    def test_symmetric(self):
        assert levenshtein("landscape", "landscap3") == levenshtein("landscap3", "landscape")


class TestSimilarText:
    def test_percentage(self):
        # 公共字符: "Wor" + "d" = 4，4 * 2 * 100 / 9
        assert similar_text("World", "Word") == pytest.approx(88.888, rel=1e-3)

    def test_empty_strings(self):
        assert similar_text("", "") == 0.0

    def test_no_common_characters(self):
        assert similar_text("abc", "xyz") == 0.0


class TestCalculateSimilarity:
    def test_identical_after_normalization(self):
        assert calculate_similarity("My Photo.jpg", "my_photo.jpg") == 1.0

    def test_partial_match(self):
        # "sunset" + "." + "p" + "g" = 9 个公共字符，18 / 25
        assert calculate_similarity("sunset.jpg", "sunsetbeach.png") == pytest.approx(0.72)

    def test_range(self):
        value = calculate_similarity("landscape.jpg", "landscap3.jpg")
        assert 0.0 < value < 1.0


class TestEditSimilarity:
    def test_equal(self):
        assert edit_similarity("abc", "abc") == 1.0

    def test_empty(self):
        assert edit_similarity("", "") == 1.0

    def test_one_edit(self):
        assert edit_similarity("abcd", "abce") == pytest.approx(0.75)
