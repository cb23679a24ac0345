from graph_ingest.importer.shape import compute_shape_hash, shape_hash_for_source, shape_signature


def test_shape_hash_ignores_scalar_values_and_types():
    first = {"id": 1, "name": "Pump", "active": True}
    second = {"id": "abc", "name": None, "active": "yes"}

    assert compute_shape_hash(first) == compute_shape_hash(second)


def test_shape_hash_ignores_key_order():
    assert compute_shape_hash({"a": 1, "b": {"c": 2, "d": 3}}) == compute_shape_hash({"b": {"d": 0, "c": 0}, "a": 0})


def test_shape_hash_changes_with_key_names_and_nesting():
    base = compute_shape_hash({"id": 1, "name": "x"})

    assert compute_shape_hash({"id": 1, "title": "x"}) != base
    assert compute_shape_hash({"id": 1, "name": {"first": "x"}}) != base
    assert compute_shape_hash({"id": 1}) != base


def test_shape_hash_distinguishes_objects_from_arrays():
    assert compute_shape_hash({"items": {"id": 1}}) != compute_shape_hash({"items": [{"id": 1}]})


def test_arrays_are_sampled_through_first_element():
    first = {"items": [{"id": 1}, {"id": 2, "extra": True}]}
    second = {"items": [{"id": 9}]}

    assert compute_shape_hash(first) == compute_shape_hash(second)
    assert compute_shape_hash({"items": []}) != compute_shape_hash(second)


def test_stop_nodes_are_recorded_but_not_descended():
    first = {"id": 1, "meta": {"a": 1}}
    second = {"id": 2, "meta": {"b": {"c": 2}}}

    assert compute_shape_hash(first) != compute_shape_hash(second)
    assert compute_shape_hash(first, stop_nodes=["meta"]) == compute_shape_hash(second, stop_nodes=["meta"])
    assert compute_shape_hash(first, stop_nodes=["meta"]) != compute_shape_hash({"id": 1}, stop_nodes=["meta"])


def test_value_nodes_fold_their_value_into_the_shape():
    pump = {"type": "pump", "id": 1}
    valve = {"type": "valve", "id": 1}

    assert compute_shape_hash(pump) == compute_shape_hash(valve)
    assert compute_shape_hash(pump, value_nodes=["type"]) != compute_shape_hash(valve, value_nodes=["type"])
    assert compute_shape_hash(pump, value_nodes=["type"]) == compute_shape_hash(
        {"type": "pump", "id": 7}, value_nodes=["type"]
    )


def test_hints_match_full_paths_inside_arrays():
    first = {"items": [{"kind": "a", "id": 1}]}
    second = {"items": [{"kind": "b", "id": 1}]}

    assert compute_shape_hash(first, value_nodes=["items[].kind"]) != compute_shape_hash(
        second, value_nodes=["items[].kind"]
    )


def test_shape_hash_for_source_reads_hints_from_config():
    payload = {"type": "pump", "id": 1}
    config = {"value_nodes": "type", "stop_nodes": []}

    assert shape_hash_for_source(payload, config) == compute_shape_hash(payload, value_nodes=["type"])
    assert shape_hash_for_source(payload, None) == compute_shape_hash(payload)


def test_signature_is_deterministic_json():
    signature = shape_signature({"b": [1], "a": {}})

    assert signature == shape_signature({"a": {}, "b": [2, 3]})
    assert len(compute_shape_hash({"a": 1})) == 64
