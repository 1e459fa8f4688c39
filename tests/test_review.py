import pytest

from conftest import make_messages
from chronicler.chunker import chunk_messages
from chronicler.context import InvalidStateError
from chronicler.review import ReviewState


def _review() -> ReviewState:
    return ReviewState(chunk_messages(make_messages(10), 3))


def test_selection_toggles_until_frozen():
    review = _review()
    assert review.toggle_selection(1) is False
    assert [c.display_id for c in review.selected_chunks()] == [1, 3, 4]
    review.set_all_selection(False)
    assert review.selected_chunks() == []
    review.freeze()
    with pytest.raises(InvalidStateError):
        review.toggle_selection(0)
    with pytest.raises(InvalidStateError):
        review.set_all_selection(True)


def test_status_and_counts():
    review = _review()
    review.set_status(0, "success")
    review.set_status(2, "error")
    counts = review.counts()
    assert counts["success"] == 1
    assert counts["error"] == 1
    assert counts["pending"] == 2
    assert counts["selected"] == 4
    with pytest.raises(ValueError):
        review.set_status(0, "done")
    with pytest.raises(IndexError):
        review.toggle_selection(9)
    assert review.by_display_id(4).index == 3
