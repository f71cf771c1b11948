"""
Testes unitários para o chunking em janelas sobrepostas.
"""

import math

import pytest

from narrative_dispatch.services.llm.content_chunker import (
    chunk_scenes,
    chunk_text,
    estimate_tokens,
    fit_window_size,
    split,
)
from tests.helpers import make_profile


def _assert_coverage(windows, length, overlap):
    covered = set()
    for window in windows:
        covered.update(range(window.start, window.end))
    assert covered == set(range(length))

    for current, following in zip(windows, windows[1:]):
        shared = current.end - following.start
        assert shared == overlap
        assert current.overlap_size == overlap
    assert windows[-1].overlap_size == 0
    assert windows[-1].end == length


class TestSplit:
    """Testes para split()."""

    def test_manuscript_250k_words(self):
        """250.000 palavras com 2000/200 geram ceil((L-O)/(W-O)) janelas."""
        sequence = list(range(250_000))
        windows = split(sequence, 2000, 200)

        assert len(windows) == 139
        assert len(windows) == math.ceil((250_000 - 200) / (2000 - 200))
        _assert_coverage(windows, 250_000, 200)

    @pytest.mark.parametrize("length,size,overlap", [
        (10, 3, 1),
        (11, 4, 0),
        (100, 10, 9),
        (2001, 2000, 200),
        (5000, 2000, 200),
        (7, 2, 1),
    ])
    def test_count_and_coverage(self, length, size, overlap):
        """Cobertura total, overlap exato e contagem pela fórmula."""
        windows = split(list(range(length)), size, overlap)

        assert len(windows) == math.ceil((length - overlap) / (size - overlap))
        _assert_coverage(windows, length, overlap)
        assert [w.index for w in windows] == list(range(len(windows)))

    def test_windows_have_fixed_size_except_last(self):
        windows = split(list(range(10)), 4, 1)
        assert [(w.start, w.end) for w in windows] == [(0, 4), (3, 7), (6, 10)]
        assert all(len(w) == 4 for w in windows)

    def test_last_window_clipped(self):
        windows = split(list(range(10)), 4, 0)
        assert [(w.start, w.end) for w in windows] == [(0, 4), (4, 8), (8, 10)]
        assert list(windows[-1].items) == [8, 9]

    def test_short_sequence_single_window(self):
        """L <= W gera exatamente uma janela cobrindo tudo."""
        windows = split(list(range(5)), 10, 3)
        assert len(windows) == 1
        assert (windows[0].start, windows[0].end, windows[0].overlap_size) == (0, 5, 0)

    def test_exact_size_single_window(self):
        windows = split(list(range(10)), 10, 3)
        assert len(windows) == 1

    def test_empty_sequence_single_empty_window(self):
        windows = split([], 10, 3)
        assert len(windows) == 1
        assert windows[0].start == windows[0].end == 0
        assert list(windows[0].items) == []

    @pytest.mark.parametrize("size,overlap", [(10, 10), (10, 11), (10, -1), (0, 0)])
    def test_invalid_parameters(self, size, overlap):
        """overlap fora de [0, window_size) é ValueError."""
        with pytest.raises(ValueError):
            split(list(range(100)), size, overlap)


class TestChunkHelpers:
    """Testes para chunk_text, chunk_scenes e estimativas."""

    def test_chunk_text_word_windows(self):
        text = " ".join(f"w{i}" for i in range(25))
        windows = chunk_text(text, window_words=10, overlap_words=2)

        assert len(windows) == 3
        assert windows[0].text.split()[-2:] == windows[1].text.split()[:2]
        assert windows[-1].text.split()[-1] == "w24"

    def test_chunk_text_collapses_whitespace(self):
        windows = chunk_text("a  b\n\nc\td", window_words=10, overlap_words=0)
        assert windows[0].text == "a b c d"

    def test_chunk_scenes_default_window_of_five(self):
        scenes = [{"id": f"s{i}"} for i in range(12)]
        windows = chunk_scenes(scenes)

        assert [(w.start, w.end) for w in windows] == [(0, 5), (4, 9), (8, 12)]
        assert windows[1].items[0] == {"id": "s4"}

    def test_estimate_tokens_by_content_type(self):
        text = "a" * 42
        assert estimate_tokens(text) == 10
        assert estimate_tokens(text, "dialogue") == 12
        assert estimate_tokens(text, "technical") == 9
        assert estimate_tokens("") == 0

    def test_fit_window_size_keeps_requested_when_it_fits(self):
        profile = make_profile(max_tokens=128_000)
        assert fit_window_size(profile, 1200, 2000, 200) == 2000

    def test_fit_window_size_clamps_to_provider_capacity(self):
        """(4096 - 1200 - 300) / 1.3 = 1996 palavras."""
        profile = make_profile(max_tokens=4096)
        assert fit_window_size(profile, 1200, 2000, 200) == 1996

    def test_fit_window_size_never_below_overlap(self):
        profile = make_profile(max_tokens=1600)
        assert fit_window_size(profile, 1200, 2000, 200) == 201
