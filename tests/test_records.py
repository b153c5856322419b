from batstats.records import IdentifierRegistry
from batstats.records import decode_record
from batstats.records import parse_float
from batstats.records import parse_int
from batstats.records import value_around_marker


def test_decode_record_splits_header_fields():
    rec = decode_record("9,10123,l,pwi,uid,12.5\r\n")
    assert rec is not None
    assert rec.version == "9"
    assert rec.owner_id == 10123
    assert rec.category == "l"
    assert rec.type_tag == "pwi"
    assert rec.text_at(5) == "12.5"
    assert len(rec) == 6


def test_decode_record_rejects_short_lines():
    assert decode_record("9,0") is None
    assert decode_record("") is None
    assert decode_record("9,0,l") is None


def test_numeric_accessors_fall_back():
    rec = decode_record("9,abc,l,kwl,name,notanumber")
    assert rec.owner_id is None
    assert rec.opt_int_at(5) is None
    assert rec.int_at(5) == 0
    assert rec.int_at(50, default=7) == 7
    assert rec.float_at(99) == 0.0


def test_parse_helpers():
    assert parse_int("42") == 42
    assert parse_int("4.2") is None
    assert parse_int(None) is None
    assert parse_float("4.25") == 4.25
    assert parse_float("nan") is None
    assert parse_float("inf") is None
    assert parse_float("x") is None


def test_value_around_marker_reads_neighbours():
    fields = ("9", "1", "l", "wl", "tag", "0", "f", "0", "3500", "p", "4", "120", "bp", "1")
    assert value_around_marker(fields, "p") == (3500, 4)
    assert value_around_marker(fields, "bp") == (120, 1)


def test_value_around_marker_missing_or_at_edges():
    assert value_around_marker(("a", "b"), "p") == (0, 0)
    assert value_around_marker(("p", "3"), "p") == (0, 3)
    assert value_around_marker(("10", "p"), "p") == (10, 0)
    assert value_around_marker(("x", "p", "y"), "p") == (0, 0)


def test_identifier_registry_resolves_and_falls_back():
    reg = IdentifierRegistry()
    reg.record_mapping(10123, "com.example.app")
    assert reg.resolve(10123) == "com.example.app"
    assert reg.resolve(42) == "id:42"
    assert 10123 in reg
    assert 42 not in reg
    assert len(reg) == 1

    reg.record_mapping(10123, "com.example.renamed")
    assert reg.resolve(10123) == "com.example.renamed"
