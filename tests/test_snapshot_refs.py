from hercules_device.core.snapshot import (
    Rect,
    SnapshotNode,
    attach_refs,
    center_of_rect,
    find_node_by_ref,
    normalize_ref,
)


def make_nodes(count: int):
    return [SnapshotNode(index=i, depth=min(i, 2), type="Button", label=f"item {i}") for i in range(count)]


def test_attach_refs_uses_sequence_position() -> None:
    nodes = attach_refs(make_nodes(4))
    assert [n.ref for n in nodes] == ["e0", "e1", "e2", "e3"]


def test_attach_refs_does_not_mutate_input_and_is_idempotent() -> None:
    original = make_nodes(3)
    once = attach_refs(original)
    twice = attach_refs(once)
    assert all(n.ref is None for n in original)
    assert once == twice


def test_attach_refs_accepts_wire_dicts() -> None:
    nodes = attach_refs([{"depth": 0, "type": "Application"}, {"depth": 1, "type": "Button", "rect": {"x": 1, "y": 2, "width": 3, "height": 4}}])
    assert nodes[1].ref == "e1"
    assert nodes[1].rect == Rect(1, 2, 3, 4)


def test_ref_round_trip() -> None:
    nodes = attach_refs(make_nodes(10))
    for position, node in enumerate(nodes):
        assert find_node_by_ref(nodes, f"e{position}") is node


def test_normalize_ref_forms() -> None:
    assert normalize_ref("@e2") == "e2"
    assert normalize_ref("e2") == "e2"
    assert normalize_ref("  @e12 ") == "e12"
    assert normalize_ref("@x2") is None
    assert normalize_ref("e") is None
    assert normalize_ref("e2a") is None
    assert normalize_ref("@@e2") is None
    assert normalize_ref("") is None
    assert normalize_ref(None) is None


def test_find_node_by_ref_unknown() -> None:
    assert find_node_by_ref(attach_refs(make_nodes(2)), "e5") is None


def test_center_of_rect_rounds() -> None:
    assert center_of_rect(Rect(16, 200, 358, 44)) == (195, 222)
    assert center_of_rect(Rect(0, 0, 3, 3)) == (2, 2)
    assert center_of_rect(Rect(0, 0, 5, 9)) == (3, 5)


def test_node_wire_shape_omits_missing_fields() -> None:
    node = attach_refs([SnapshotNode(index=0, depth=1, type="Button", label="OK")])[0]
    assert node.to_dict() == {"ref": "e0", "index": 0, "depth": 1, "type": "Button", "label": "OK"}
