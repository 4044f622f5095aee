"""
Tests for querytrail.core.labels — rendering and parsing reference labels.
"""

from querytrail.core.labels import (
    Reference,
    label_location,
    label_path,
    normalize_path,
    parse_label,
    strip_disambiguator,
)


class TestRender:

    def test_named_reference(self):
        ref = Reference("findById", "src/com/example/UserMapper.kt", 12)
        assert ref.render() == "findById (src/com/example/UserMapper.kt:12)"
        assert str(ref) == ref.render()

    def test_disambiguator_is_appended(self):
        ref = Reference("<select>", "res/UserMapper.xml", 3, disambiguator="xml 4f")
        assert ref.render() == "<select> (res/UserMapper.xml:3) [xml 4f]"

    def test_same_location_renders_identically(self):
        a = Reference("run", "a/b.py", 7)
        b = Reference("run", "a/b.py", 7)
        assert a == b
        assert hash(a) == hash(b)
        assert a.render() == b.render()

    def test_anonymous_elements_on_same_line_differ(self):
        a = Reference("<select>", "m.xml", 3, disambiguator="xml 10")
        b = Reference("<select>", "m.xml", 3, disambiguator="xml 40")
        assert a.render() != b.render()

    def test_reference_is_its_own_caller_element(self):
        ref = Reference("f", "a.py", 1)
        assert ref.to_reference() is ref


class TestParse:

    def test_location(self):
        assert label_location("foo (a/b/C.kt:10)") == "a/b/C.kt:10"

    def test_parse_label(self):
        assert parse_label("foo (a/b/C.kt:10)") == ("a/b/C.kt", 10)

    def test_parse_label_ignores_disambiguator(self):
        assert parse_label("<module> (a/m.py:3) [col 0]") == ("a/m.py", 3)

    def test_label_without_location(self):
        assert label_location("just a name") is None
        assert parse_label("just a name") is None
        assert label_path("just a name") is None

    def test_label_without_line(self):
        assert parse_label("foo (a/b/C.kt)") is None

    def test_label_path_drops_line(self):
        assert label_path("foo (x/y/Z.kt:99)") == "x/y/Z.kt"

    def test_strip_disambiguator(self):
        assert strip_disambiguator("<update> (m.xml:5) [xml ff]") == "<update> (m.xml:5)"
        assert strip_disambiguator("plain (m.kt:5)") == "plain (m.kt:5)"

    def test_round_trip_through_render(self):
        ref = Reference("update", "src/web/UserController.kt", 42)
        assert parse_label(ref.render()) == (ref.file_path, ref.line)


class TestNormalizePath:

    def test_backslashes_become_slashes(self):
        assert normalize_path("C:\\src\\app\\Main.kt") == "C:/src/app/Main.kt"

    def test_forward_slashes_unchanged(self):
        assert normalize_path("/src/app/Main.kt") == "/src/app/Main.kt"
