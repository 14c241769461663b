import json

import pytest

from conftest import make_protocol
from protocol_rec.catalog import DEFAULT_PROTOCOLS, Protocol, ProtocolCatalog, load_catalog
from protocol_rec.errors import NotFoundError, ValidationError
from protocol_rec.taxonomy import Category, Difficulty, Equipment, estimate_session_minutes


def test_default_catalog_has_four_protocols_in_order(catalog):
    ids = [p.id for p in catalog.list_protocols()]
    assert ids == [
        "gmax-strength-foundation",
        "gmax-hypertrophy-accelerated",
        "gmax-fat-loss-metabolic",
        "gmax-powerlifting-elite",
    ]
    assert len(catalog) == 4
    assert "gmax-powerlifting-elite" in catalog


def test_get_unknown_protocol_raises_not_found(catalog):
    with pytest.raises(NotFoundError) as excinfo:
        catalog.get("does-not-exist")
    assert excinfo.value.protocol_id == "does-not-exist"
    # Also usable as a plain LookupError
    with pytest.raises(LookupError):
        catalog.embedding_of("does-not-exist")


def test_protocol_coerces_strings_to_enums():
    protocol = make_protocol(required_equipment=["barbell", "bench"])
    assert protocol.category is Category.STRENGTH
    assert protocol.difficulty is Difficulty.BEGINNER
    assert protocol.required_equipment == frozenset({Equipment.BARBELL, Equipment.BENCH})


def test_protocol_rejects_unknown_vocabulary():
    with pytest.raises(ValidationError):
        make_protocol(required_equipment={"rowing-machine"})
    with pytest.raises(ValidationError):
        make_protocol(difficulty="legendary")
    with pytest.raises(ValidationError):
        make_protocol(sessions_per_week=0)


def test_protocol_dict_round_trip_preserves_definition():
    original = DEFAULT_PROTOCOLS[1]
    assert Protocol.from_dict(original.to_dict()) == original


def test_from_dict_reports_missing_fields():
    with pytest.raises(ValidationError, match="category"):
        Protocol.from_dict({"id": "x", "difficulty": "beginner", "duration_weeks": 4, "sessions_per_week": 2})


def test_embedding_is_memoized(catalog):
    first = catalog.embedding_of("gmax-strength-foundation")
    second = catalog.embedding_of("gmax-strength-foundation")
    assert first is second


def test_upsert_invalidates_only_the_changed_embedding(catalog):
    strength = catalog.embedding_of("gmax-strength-foundation")
    hypertrophy = catalog.embedding_of("gmax-hypertrophy-accelerated")

    changed = Protocol.from_dict({**catalog.get("gmax-strength-foundation").to_dict(), "duration_weeks": 12})
    catalog.upsert(changed)

    assert catalog.embedding_of("gmax-hypertrophy-accelerated") is hypertrophy
    new_strength = catalog.embedding_of("gmax-strength-foundation")
    assert new_strength is not strength
    assert new_strength.block("duration")[0] == pytest.approx(12 / 24)


def test_upsert_with_identical_definition_keeps_embedding(catalog):
    embedding = catalog.embedding_of("gmax-strength-foundation")
    catalog.upsert(catalog.get("gmax-strength-foundation"))
    assert catalog.embedding_of("gmax-strength-foundation") is embedding


def test_remove_and_reload(catalog):
    kept = catalog.embedding_of("gmax-fat-loss-metabolic")
    removed = catalog.remove("gmax-powerlifting-elite")
    assert removed.id == "gmax-powerlifting-elite"
    assert "gmax-powerlifting-elite" not in catalog
    with pytest.raises(NotFoundError):
        catalog.remove("gmax-powerlifting-elite")

    catalog.reload([catalog.get("gmax-fat-loss-metabolic"), make_protocol()])
    assert [p.id for p in catalog.list_protocols()] == ["gmax-fat-loss-metabolic", "barbell-basics"]
    assert catalog.embedding_of("gmax-fat-loss-metabolic") is kept


def test_load_catalog_skips_invalid_rows(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({
        "protocols": [
            make_protocol().to_dict(),
            {"id": "broken", "category": "yoga"},
        ]
    }))

    loaded = load_catalog(path)
    assert [p.id for p in loaded.list_protocols()] == ["barbell-basics"]


def test_load_catalog_with_no_valid_rows_raises(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps([{"id": "broken"}]))
    with pytest.raises(ValidationError):
        load_catalog(path)


def test_session_time_estimate_uses_category_and_difficulty():
    assert estimate_session_minutes(Category.STRENGTH, Difficulty.BEGINNER) == 48
    assert estimate_session_minutes(Category.POWERLIFTING, Difficulty.EXPERT) == 126
    assert estimate_session_minutes(Category.HYPERTROPHY, Difficulty.INTERMEDIATE) == 75
    # Conditioning has no dedicated base time
    assert estimate_session_minutes(Category.CONDITIONING, Difficulty.ADVANCED) == 54


def test_load_catalog_reports_unreadable_files(tmp_path):
    with pytest.raises(ValidationError):
        load_catalog(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("[{")
    with pytest.raises(ValidationError):
        load_catalog(bad)
