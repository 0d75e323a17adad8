from leadflow.enumerations import EnumerationCatalog, build_crm_query


def test_catalog_only_indexes_enumeration_fields():
    catalog = EnumerationCatalog(
        [
            {"ID": "1", "FIELD_NAME": "STATUS", "type": "enumeration",
             "items": [{"ID": "10", "VALUE": "New"}]},
            {"ID": "2", "FIELD_NAME": "TITLE", "type": "string",
             "items": [{"ID": "20", "VALUE": "New"}]},
            {"ID": "3", "FIELD_NAME": "EMPTY", "type": "enumeration", "items": []},
        ]
    )

    assert len(catalog) == 2  # "1" and "STATUS"
    assert catalog.convert("STATUS", "New") == "10"
    assert catalog.convert("1", "New") == "10"
    assert catalog.convert("TITLE", "New") == "New"
    assert catalog.convert("EMPTY", "New") == "New"


def test_unknown_labels_and_non_strings_pass_through():
    catalog = EnumerationCatalog(
        [{"FIELD_NAME": "STAGE", "type": "enumeration",
          "items": [{"ID": 5, "VALUE": "Won"}, {"VALUE": "Orphan"}]}]
    )

    assert catalog.convert("STAGE", "Lost") == "Lost"
    assert catalog.convert("STAGE", "Orphan") == "Orphan"
    assert catalog.convert("STAGE", 5) == 5
    assert catalog.convert("STAGE", "5") == "5"
    assert catalog.convert_all({"STAGE": ["Won", "Lost"], "OTHER": "Won"}) == {
        "STAGE": ["5", "Lost"],
        "OTHER": "Won",
    }


def test_empty_catalog():
    assert len(EnumerationCatalog(None)) == 0
    assert EnumerationCatalog([]).convert("X", "y") == "y"


def test_build_crm_query_shapes():
    params = build_crm_query(
        42,
        {
            "TITLE": "Lead",
            "OPENED": True,
            "EMPTY": None,
            "TAGS": ["a", "b"],
            "PHONE": {"VALUE": "+1", "VALUE_TYPE": "WORK"},
        },
    )

    assert params == [
        ("ID", "42"),
        ("FIELDS[TITLE]", "Lead"),
        ("FIELDS[OPENED]", "true"),
        ("FIELDS[EMPTY]", ""),
        ("FIELDS[TAGS][]", "a"),
        ("FIELDS[TAGS][]", "b"),
        ("FIELDS[PHONE][VALUE]", "+1"),
        ("FIELDS[PHONE][VALUE_TYPE]", "WORK"),
    ]
