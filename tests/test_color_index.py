# tests/test_color_index.py

import threading

import pytest

from core.color_index import ColorIndex
from core.errors import InvalidColorError, ValidationError


@pytest.fixture
def index():
    color_index = ColorIndex()
    color_index.index(1, [(255, 0, 0), (255, 255, 255)])  # A: red
    color_index.index(2, [(200, 30, 30)])                 # B: darker red
    color_index.index(3, [(0, 0, 255)])                   # C: blue
    return color_index


def ids(results):
    return [image_id for image_id, _ in results]


def test_closest_colors_first(index):
    results = index.query("#FA0000", 2)

    assert ids(results) == [1, 2]
    assert results[0][1] < results[1][1]


def test_query_accepts_all_color_forms(index):
    expected = ids(index.query((250, 0, 0), 3))

    assert ids(index.query("fa0000", 3)) == expected
    assert ids(index.query("rgb(250, 0, 0)", 3)) == expected
    assert ids(index.query([250, 0, 0], 3)) == expected


def test_far_target_still_finds_candidates(index):
    # Nothing near green; rings keep widening until something is found
    results = index.query("#00FF00", 1)
    assert len(results) == 1


def test_results_capped_by_limit(index):
    assert len(index.query("#808080", 2)) == 2
    assert len(index.query("#808080", 10)) == 3


def test_limit_zero_and_negative(index):
    assert index.query("#FF0000", 0) == []
    with pytest.raises(ValidationError):
        index.query("#FF0000", -1)


def test_invalid_color_rejected(index):
    for bad in ("#GG0000", "not a color", (256, 0, 0), (1, 2)):
        with pytest.raises(InvalidColorError):
            index.query(bad, 5)


def test_ties_broken_by_id():
    color_index = ColorIndex()
    for image_id in (9, 4, 6):
        color_index.index(image_id, [(10, 200, 10)])

    assert ids(color_index.query((10, 200, 10), 3)) == [4, 6, 9]


def test_deterministic(index):
    assert index.query("#C81E1E", 3) == index.query("#C81E1E", 3)


def test_remove(index):
    index.remove(1)
    index.remove(77)

    assert 1 not in index
    assert ids(index.query("#FF0000", 3)) == [2, 3]


def test_reindex_replaces_previous_buckets(index):
    index.index(1, [(0, 0, 250)])

    assert len(index) == 3
    assert ids(index.query("#0000FF", 2)) == [3, 1]
    assert ids(index.query("#FF0000", 1)) == [2]


def test_only_first_max_colors_are_indexed():
    color_index = ColorIndex(max_colors=2)
    color_index.index(1, [(255, 0, 0), (0, 255, 0), (0, 0, 255)])
    color_index.index(2, [(0, 0, 250)])

    assert ids(color_index.query("#0000FF", 1)) == [2]


def test_bucket_count_tracks_membership():
    color_index = ColorIndex(quantization_step=32)
    color_index.index(1, [(0, 0, 0), (10, 10, 10)])  # same bucket
    color_index.index(2, [(255, 255, 255)])
    assert color_index.bucket_count == 2

    color_index.remove(2)
    assert color_index.bucket_count == 1


def test_candidate_cap_bounds_search():
    color_index = ColorIndex(max_candidates=1, settle_rings=0)
    color_index.index(1, [(0, 0, 0)])
    color_index.index(2, [(255, 255, 255)])

    assert ids(color_index.query("#000000", 2)) == [1]


def test_rebuild(index):
    count = index.rebuild([(5, ["#00FF00"]), (6, [(0, 250, 0)])])

    assert count == 2
    assert 1 not in index
    assert ids(index.query("#00FF00", 5)) == [5, 6]


def test_near_identical_red_beats_blue():
    color_index = ColorIndex()
    color_index.index(1, ["#FF0000"])
    color_index.index(2, ["#FE0101"])
    color_index.index(3, ["#0000FF"])

    assert ids(color_index.query("#FF0000", 2)) == [1, 2]
    assert color_index.query("#FF0000", 5) == color_index.query("#FF0000", 5)


def test_rebuild_serves_old_contents_and_replays_concurrent_writes(index):
    halfway, resume = threading.Event(), threading.Event()

    def entries():
        yield 10, ["#00FF00"]
        yield 11, ["#00FA00"]
        halfway.set()
        resume.wait(10)
        yield 12, ["#00F000"]

    rebuilder = threading.Thread(target=index.rebuild, args=(entries(),))
    rebuilder.start()
    try:
        assert halfway.wait(5)
        assert ids(index.query("#FF0000", 3)) == [1, 2, 3]

        index.index(20, ["#00FE00"])
        index.remove(11)
        index.remove(3)
        assert ids(index.query("#FF0000", 5)) == [1, 2, 20]
    finally:
        resume.set()
        rebuilder.join(10)

    assert not rebuilder.is_alive()
    assert len(index) == 3
    assert 1 not in index
    assert ids(index.query("#00FF00", 5)) == [10, 20, 12]
