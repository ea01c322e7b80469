import pytest

from vectornode.chunking import ChunkingConfig, chunk_text
from vectornode.errors import InvalidInputError
from vectornode.util_text import normalize_whitespace


def _spans(text: str, chunks: list[str]) -> list[tuple[int, int]]:
    spans, pos = [], 0
    for c in chunks:
        i = text.find(c, pos)
        assert i >= 0, "chunk is not a substring of the normalized text"
        spans.append((i, i + len(c)))
        pos = i + 1
    return spans


@pytest.mark.parametrize("text", [None, "", "   \n\t  "])
def test_blank_input_yields_no_chunks(text):
    assert chunk_text(text) == []


def test_short_text_is_one_normalized_chunk():
    assert chunk_text("  Hello \n\n  world.  ") == ["Hello world."]


def test_multi_chunk_overlap_without_sentence_breaks():
    text = "abcdefghij" * 250  # 2500 chars, no sentence ends
    chunks = chunk_text(text, ChunkingConfig(chunk_size=1000, overlap=200))

    assert [len(c) for c in chunks] == [1000, 1000, 900]
    for a, b in zip(chunks, chunks[1:]):
        assert a[-200:] == b[:200]


def test_sentence_alignment_and_size_bound():
    sentence = "The quick brown fox jumps over the lazy dog again and again. "
    text = sentence * 60
    cfg = ChunkingConfig(chunk_size=500, overlap=100)
    chunks = chunk_text(text, cfg)

    assert len(chunks) > 1
    assert all(0 < len(c) <= cfg.chunk_size for c in chunks)
    assert all(c.endswith(".") for c in chunks[:-1])


def test_sentence_break_too_close_to_start_is_ignored():
    # the only '.' sits within the first 100 chars of the window
    text = "Short. " + "x" * 1500
    chunks = chunk_text(text, ChunkingConfig(chunk_size=1000, overlap=200))
    assert len(chunks[0]) == 1000


def test_every_character_is_covered():
    words = [f"word{i}{'.' if i % 13 == 0 else ''}" for i in range(900)]
    raw = "  ".join(words) + "\n\n  tail!"
    text = normalize_whitespace(raw)
    chunks = chunk_text(raw, ChunkingConfig(chunk_size=300, overlap=60))

    covered = [False] * len(text)
    for start, end in _spans(text, chunks):
        for i in range(start, end):
            covered[i] = True
    assert all(covered[i] for i, ch in enumerate(text) if not ch.isspace())


def test_consecutive_chunks_overlap_at_most_overlap():
    text = " ".join(f"token{i}." for i in range(600))
    cfg = ChunkingConfig(chunk_size=400, overlap=80)
    norm = normalize_whitespace(text)
    spans = _spans(norm, chunk_text(text, cfg))
    for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
        assert prev_end - next_start <= cfg.overlap


def test_short_sentence_chunk_never_rewinds():
    # sentence break at ~150 with an overlap bigger than that chunk
    text = "a" * 150 + ". " + "b" * 900
    chunks = chunk_text(text, ChunkingConfig(chunk_size=300, overlap=250))
    assert chunks[0] == "a" * 150 + "."
    assert chunks[-1].endswith("b")


def test_output_is_deterministic():
    text = "One. Two! Three? " * 200
    cfg = ChunkingConfig(chunk_size=256, overlap=32)
    assert chunk_text(text, cfg) == chunk_text(text, cfg)


@pytest.mark.parametrize("size,overlap", [(0, 0), (100, 100), (100, 150), (100, -1)])
def test_invalid_config_rejected(size, overlap):
    with pytest.raises(InvalidInputError):
        ChunkingConfig(chunk_size=size, overlap=overlap)
