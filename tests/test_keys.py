from alchemy.domain.keys import (
    admin_key,
    clean_element_name,
    element_identity,
    is_sentinel,
    is_starter,
    normalize_key,
    starter_glyph,
)


class TestNormalizeKey:
    def test_symmetric(self):
        assert normalize_key("Water", "Fire") == normalize_key("Fire", "Water")

    def test_case_and_whitespace_collapse(self):
        assert normalize_key("Earth", "Water") == normalize_key("water", "  earth ")
        assert normalize_key("Earth", "Water") == "earth+water"

    def test_inner_whitespace_becomes_underscore(self):
        assert normalize_key("Hot  Dog", "Ice\tCream") == "hot_dog+ice_cream"

    def test_sorted_by_code_point(self):
        assert normalize_key("zebra", "Apple") == "apple+zebra"

    def test_self_pair(self):
        assert normalize_key("Fire", "fire") == "fire+fire"

    def test_total_on_empty_strings(self):
        assert normalize_key("", " ") == "+"


def test_admin_key_uses_slug():
    assert admin_key("Philosopher's  Stone") == "_admin_philosopher's_stone"


def test_clean_and_identity():
    assert clean_element_name("  Hot   Dog ") == "Hot Dog"
    assert element_identity(" Hot  DOG") == "hot dog"


def test_starters_are_case_insensitive():
    assert is_starter("EARTH")
    assert is_starter(" wind ")
    assert not is_starter("Steam")
    assert starter_glyph("fire") == "🔥"


def test_sentinels():
    assert is_sentinel("_ADMIN")
    assert is_sentinel("_defined")
    assert not is_sentinel("Admin")
