import pytest

from alchemy.domain.replies import (
    MalformedReply,
    ParsedElement,
    parse_element_reply,
    parse_glyph_map,
    parse_paths_reply,
)


class TestParseElementReply:
    def test_plain_json(self):
        assert parse_element_reply('{"name": "Steam", "glyph": "♨️"}') == ParsedElement("Steam", "♨️")

    def test_code_fence_and_chatter(self):
        text = 'Sure!\n```json\n{"name": " Hot  Spring ", "emoji": "♨️"}\n```\nEnjoy.'
        assert parse_element_reply(text) == ParsedElement("Hot Spring", "♨️")

    def test_object_inside_prose(self):
        assert parse_element_reply('Result: {"name": "Mud", "glyph": "🟤"} done') == ParsedElement("Mud", "🟤")

    def test_two_glyphs_rejected(self):
        assert isinstance(parse_element_reply('{"name": "Steam", "glyph": "♨️💨"}'), MalformedReply)

    def test_length_boundary(self):
        assert isinstance(parse_element_reply('{"name": "%s", "glyph": "✨"}' % ("a" * 100)), ParsedElement)
        assert isinstance(parse_element_reply('{"name": "%s", "glyph": "✨"}' % ("a" * 101)), MalformedReply)

    @pytest.mark.parametrize(
        "text",
        ["", "no json here", '{"name": "", "glyph": "✨"}', '{"glyph": "✨"}', '["Steam", "♨️"]', '{"name": "_ADMIN", "glyph": "✨"}'],
    )
    def test_malformed(self, text):
        assert isinstance(parse_element_reply(text), MalformedReply)


class TestParsePathsReply:
    def test_valid_paths(self):
        text = '{"paths": [{"steps": [{"a": "Water", "b": "Fire", "result": "Steam", "glyph": "♨️"}]}]}'
        paths = parse_paths_reply(text)
        assert len(paths) == 1
        assert paths[0][0].result_name == "Steam"
        assert paths[0][0].input_b == "Fire"

    def test_invalid_step_drops_only_its_path(self):
        text = (
            '{"paths": ['
            '{"steps": [{"a": "Water", "b": "Fire", "result": "Steam", "glyph": "♨️🔥"}]},'
            '{"steps": [{"a": "Water", "b": "Earth", "result": "Mud", "glyph": "🟤"}]}'
            "]}"
        )
        paths = parse_paths_reply(text)
        assert [path[0].result_name for path in paths] == ["Mud"]

    def test_no_valid_path(self):
        with pytest.raises(ValueError):
            parse_paths_reply('{"paths": []}')


def test_parse_glyph_map_drops_multi_glyph_entries():
    assert parse_glyph_map('{"Hot Dog": "🌭", "Party": "🎉🎊"}') == {"hot dog": "🌭"}
