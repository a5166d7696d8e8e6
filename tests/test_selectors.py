import pytest

from dsoperator.selectors import InvalidSelectorError, selector_matches


def test_none_selector_matches_nothing():
    assert selector_matches(None, {"a": "b"}) is False


def test_empty_selector_matches_everything():
    assert selector_matches({}, {}) is True
    assert selector_matches({}, {"a": "b"}) is True


def test_match_labels():
    sel = {"matchLabels": {"team": "ml"}}
    assert selector_matches(sel, {"team": "ml", "x": "y"}) is True
    assert selector_matches(sel, {"team": "web"}) is False
    assert selector_matches(sel, None) is False


@pytest.mark.parametrize(
    "operator,values,labels,expected",
    [
        ("In", ["a", "b"], {"k": "a"}, True),
        ("In", ["a", "b"], {"k": "c"}, False),
        ("In", ["a"], {}, False),
        ("NotIn", ["a"], {"k": "b"}, True),
        ("NotIn", ["a"], {"k": "a"}, False),
        ("NotIn", ["a"], {}, True),
        ("Exists", [], {"k": ""}, True),
        ("Exists", [], {}, False),
        ("DoesNotExist", [], {}, True),
        ("DoesNotExist", [], {"k": "a"}, False),
    ],
)
def test_match_expressions(operator, values, labels, expected):
    sel = {"matchExpressions": [{"key": "k", "operator": operator, "values": values}]}
    assert selector_matches(sel, labels) is expected


def test_all_requirements_must_hold():
    sel = {
        "matchLabels": {"team": "ml"},
        "matchExpressions": [{"key": "env", "operator": "In", "values": ["prod"]}],
    }
    assert selector_matches(sel, {"team": "ml", "env": "prod"}) is True
    assert selector_matches(sel, {"team": "ml", "env": "dev"}) is False


def test_unknown_operator_raises():
    sel = {"matchExpressions": [{"key": "k", "operator": "Like", "values": ["a"]}]}
    with pytest.raises(InvalidSelectorError):
        selector_matches(sel, {})


def test_in_without_values_raises():
    sel = {"matchExpressions": [{"key": "k", "operator": "In", "values": []}]}
    with pytest.raises(InvalidSelectorError):
        selector_matches(sel, {"k": "a"})


def test_exists_with_values_raises():
    sel = {"matchExpressions": [{"key": "k", "operator": "Exists", "values": ["a"]}]}
    with pytest.raises(InvalidSelectorError):
        selector_matches(sel, {"k": "a"})


def test_invalid_key_raises():
    with pytest.raises(InvalidSelectorError):
        selector_matches({"matchLabels": {"bad key": "v"}}, {})


def test_invalid_value_raises():
    with pytest.raises(InvalidSelectorError):
        selector_matches({"matchLabels": {"k": "not valid!"}}, {})


def test_prefixed_key_is_accepted():
    sel = {"matchLabels": {"example.com/team": "ml"}}
    assert selector_matches(sel, {"example.com/team": "ml"}) is True