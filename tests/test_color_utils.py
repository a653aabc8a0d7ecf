# tests/test_color_utils.py

import numpy as np
import pytest

from core.errors import InvalidColorError
from utils.color_utils import (
    closest_color_name,
    color_names,
    delta_e,
    parse_color,
    rgb_to_lab,
    to_hex,
)


@pytest.mark.parametrize("value, expected", [
    ("#FF8800", (255, 136, 0)),
    ("ff8800", (255, 136, 0)),
    ("#f80", (255, 136, 0)),
    ("rgb(255, 136, 0)", (255, 136, 0)),
    ("RGB(1,2,3)", (1, 2, 3)),
    ((255, 136, 0), (255, 136, 0)),
    ([0, 0, 0], (0, 0, 0)),
])
def test_parse_color(value, expected):
    assert parse_color(value) == expected


@pytest.mark.parametrize("value", [
    "", "#12345", "#GGGGGG", "rgb(256, 0, 0)", "red", (1, 2), (1.5, 2, 3),
    (True, 0, 0), (-1, 0, 0), None,
])
def test_parse_color_rejects(value):
    with pytest.raises(InvalidColorError):
        parse_color(value)


def test_to_hex():
    assert to_hex((255, 136, 0)) == "#FF8800"
    assert to_hex([0, 0, 0]) == "#000000"


def test_lab_reference_points():
    lab = rgb_to_lab([(0, 0, 0), (255, 255, 255)])

    assert lab[0][0] == pytest.approx(0.0, abs=0.5)
    assert lab[1][0] == pytest.approx(100.0, abs=0.5)
    assert rgb_to_lab([]).shape == (0, 3)


def test_delta_e_is_perceptual():
    white, light_gray, blue, navy = rgb_to_lab([(255, 255, 255), (245, 245, 245),
                                               (0, 0, 255), (0, 0, 128)])
    assert delta_e(white, white) == pytest.approx(0.0)
    assert delta_e(white, light_gray) < delta_e(blue, navy)
    assert np.all(delta_e(np.stack([white, blue]), light_gray) >= 0)


def test_color_names():
    assert closest_color_name((255, 0, 0)) == "red"
    assert closest_color_name((250, 250, 250)) == "white"
    assert color_names([(255, 0, 0), (240, 10, 10), (0, 0, 0)]) == ["red", "black"]
