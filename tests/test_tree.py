import pytest

from booksource.tree import NodeKind, children, node_kind, scalar_text, walk


@pytest.mark.parametrize(
    ("value", "kind"),
    [
        (None, NodeKind.NULL),
        (True, NodeKind.BOOLEAN),
        (0, NodeKind.NUMBER),
        (1.5, NodeKind.NUMBER),
        ("a", NodeKind.STRING),
        ([], NodeKind.ARRAY),
        ((1, 2), NodeKind.ARRAY),
        ({}, NodeKind.OBJECT),
    ],
)
def test_node_kind(value, kind: NodeKind) -> None:
    assert node_kind(value) is kind


def test_children_of_containers_and_leaves() -> None:
    assert list(children({"a": 1, "b": [2]})) == [1, [2]]
    assert list(children([3, 4])) == [3, 4]
    assert list(children("leaf")) == []


def test_walk_is_pre_order() -> None:
    document = {"a": {"b": 1}, "c": [2, {"d": 3}]}

    assert list(walk(document)) == [
        document,
        {"b": 1},
        1,
        [2, {"d": 3}],
        2,
        {"d": 3},
        3,
    ]


@pytest.mark.parametrize(
    ("value", "text"),
    [
        ("x", "x"),
        (3, "3"),
        (3.0, "3"),
        (2.5, "2.5"),
        (True, "true"),
        (False, "false"),
        (None, None),
        ([1], None),
        ({"a": 1}, None),
    ],
)
def test_scalar_text(value, text) -> None:
    assert scalar_text(value) == text
