import pytest

from app.services.normalize import merge_hashtags, normalize_email, normalize_hashtag, normalize_name
from app.services.states import abbreviate_state


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("JOSÉ", "Jose"),
        ("maría  josé", "Maria Jose"),
        ("o'neil", "Oneil"),
        ("Peña", "Pena"),
        ("  ", ""),
        (None, ""),
    ],
)
def test_normalize_name(raw, expected):
    assert normalize_name(raw) == expected


def test_normalize_email_trims_and_lowercases():
    assert normalize_email("  Maria@Example.COM ") == "maria@example.com"
    assert normalize_email("   ") is None
    assert normalize_email(None) is None


@pytest.mark.parametrize(
    "raw, expected",
    [("#WeightLoss", "weightloss"), ("Juan Perez", "juanperez"), ("", "")],
)
def test_normalize_hashtag(raw, expected):
    assert normalize_hashtag(raw) == expected


def test_merge_hashtags_preserves_order_and_dedupes():
    merged = merge_hashtags(["weightloss", "webdirect"], ["#WebDirect", "activemember", ""])
    assert merged == ["weightloss", "webdirect", "activemember"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Florida", "FL"),
        ("fl", "FL"),
        ("Nueva York", "NY"),
        ("Carolina del Norte", "NC"),
        ("District of Columbia", "DC"),
        ("Puerto Rico", "PR"),
        ("  texas ", "TX"),
        ("Ontario", "Ontario"),
        (None, None),
    ],
)
def test_abbreviate_state(raw, expected):
    assert abbreviate_state(raw) == expected
