import pytest

from cinechance_rec.utils import round_half_up, percent, chunked


@pytest.mark.parametrize("value, expected", [
    (72.5, 73),
    (72.4, 72),
    (-2.5, -2),
    (0.5, 1),
    (0, 0),
])
def test_round_half_up_integers(value, expected):
    result = round_half_up(value)
    assert result == expected
    assert isinstance(result, int)


def test_round_half_up_decimals():
    assert round_half_up(7.75, 1) == 7.8
    assert round_half_up(7.74, 1) == 7.7
    assert round_half_up(81.235, 2) == pytest.approx(81.24, abs=0.01)


def test_percent():
    assert percent(1, 3) == 33
    assert percent(2, 3) == 67
    assert percent(5, 0) == 0
    assert percent(0, 10) == 0


def test_chunked():
    assert list(chunked(range(5), 2)) == [[0, 1], [2, 3], [4]]
    assert list(chunked([], 3)) == []
    with pytest.raises(ValueError):
        list(chunked([1], 0))
