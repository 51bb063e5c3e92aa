from __future__ import annotations

import json
import unittest

from x_ingest.linking import (
    BEGIN_MARKER,
    END_MARKER,
    LinkingData,
    MalformedLinkingData,
    extract_linking_data,
    parse_linking_data,
    render_linking_section,
    upsert_linking_section,
)


def _data(**overrides: str) -> LinkingData:
    values = {
        "x_username": "alice_x",
        "x_user_id": "123",
        "linking_proof": "tok.en.sig",
        "linked_at": "2024-05-01T10:00:00.000Z",
        "last_updated": "2024-05-01T10:00:00.000Z",
    }
    values.update(overrides)
    return LinkingData.for_account(**values)


def _section(payload: object) -> str:
    return f"{BEGIN_MARKER}\n{json.dumps(payload)}\n{END_MARKER}"


_VALID_PAYLOAD = {
    "lastUpdated": "2024-05-01T10:00:00.000Z",
    "xAccount": {
        "xUsername": "alice_x",
        "xUserId": "123",
        "linkedAt": "2024-05-01T10:00:00.000Z",
        "linkingProof": "tok.en.sig",
    },
}


class TestParseLinkingData(unittest.TestCase):
    def test_returns_none_without_section(self) -> None:
        self.assertIsNone(parse_linking_data("# Hello\n\nJust a profile."))
        self.assertIsNone(parse_linking_data(""))

    def test_parses_section_inside_free_text(self) -> None:
        text = "# Alice\n\nSome intro.\n\n" + _section(_VALID_PAYLOAD) + "\n\nFooter."
        data = parse_linking_data(text)

        assert data is not None
        self.assertEqual(data.x_account.x_username, "alice_x")
        self.assertEqual(data.x_account.x_user_id, "123")
        self.assertEqual(data.x_account.linking_proof, "tok.en.sig")
        self.assertEqual(data.last_updated, "2024-05-01T10:00:00.000Z")

    def test_end_marker_before_begin_is_absent(self) -> None:
        text = f"{END_MARKER}\n{json.dumps(_VALID_PAYLOAD)}\n{BEGIN_MARKER}"
        self.assertIsNone(parse_linking_data(text))

    def test_invalid_json_is_malformed(self) -> None:
        text = f"{BEGIN_MARKER}\n{{not json\n{END_MARKER}"
        with self.assertRaises(MalformedLinkingData):
            parse_linking_data(text)
        self.assertIsNone(extract_linking_data(text))

    def test_missing_required_field_is_malformed(self) -> None:
        payload = json.loads(json.dumps(_VALID_PAYLOAD))
        del payload["xAccount"]["linkingProof"]

        with self.assertRaises(MalformedLinkingData):
            parse_linking_data(_section(payload))

    def test_empty_user_id_is_malformed(self) -> None:
        payload = json.loads(json.dumps(_VALID_PAYLOAD))
        payload["xAccount"]["xUserId"] = "  "

        with self.assertRaises(MalformedLinkingData):
            parse_linking_data(_section(payload))

    def test_non_instant_timestamp_is_malformed(self) -> None:
        payload = json.loads(json.dumps(_VALID_PAYLOAD))
        payload["lastUpdated"] = "yesterday"

        with self.assertRaises(MalformedLinkingData):
            parse_linking_data(_section(payload))

    def test_second_section_is_malformed(self) -> None:
        text = _section(_VALID_PAYLOAD) + "\n\n" + _section(_VALID_PAYLOAD)
        with self.assertRaises(MalformedLinkingData):
            parse_linking_data(text)

    def test_extra_fields_are_ignored(self) -> None:
        payload = json.loads(json.dumps(_VALID_PAYLOAD))
        payload["note"] = "hi"
        payload["xAccount"]["avatar"] = "https://example.invalid/a.png"

        data = parse_linking_data(_section(payload))
        assert data is not None
        self.assertEqual(data.x_account.x_username, "alice_x")


class TestRenderAndUpsert(unittest.TestCase):
    def test_render_wraps_pretty_json_in_markers(self) -> None:
        section = render_linking_section(_data())

        self.assertTrue(section.startswith(BEGIN_MARKER + "\n"))
        self.assertTrue(section.endswith("\n" + END_MARKER))

        body = section[len(BEGIN_MARKER) : -len(END_MARKER)].strip()
        self.assertEqual(json.loads(body), _VALID_PAYLOAD)
        self.assertIn('\n  "xAccount": {', body)

    def test_render_then_parse_recovers_data(self) -> None:
        data = _data()
        self.assertEqual(parse_linking_data(render_linking_section(data)), data)

    def test_append_to_empty_text(self) -> None:
        self.assertEqual(upsert_linking_section("", _data()), render_linking_section(_data()))
        self.assertEqual(upsert_linking_section("  \n", _data()), render_linking_section(_data()))

    def test_append_uses_blank_line_when_text_lacks_newline(self) -> None:
        out = upsert_linking_section("# Alice", _data())
        self.assertEqual(out, "# Alice\n\n" + render_linking_section(_data()))

    def test_append_uses_single_newline_when_text_ends_with_one(self) -> None:
        out = upsert_linking_section("# Alice\n\n\n", _data())
        self.assertEqual(out, "# Alice\n" + render_linking_section(_data()))

    def test_replaces_existing_section_in_place(self) -> None:
        original = "# Alice\n\n" + render_linking_section(_data()) + "\n\nFooter text.\n"
        updated = upsert_linking_section(original, _data(x_username="alice_new"))

        self.assertTrue(updated.startswith("# Alice\n\n" + BEGIN_MARKER))
        self.assertTrue(updated.endswith("\n\nFooter text.\n"))
        self.assertEqual(updated.count(BEGIN_MARKER), 1)

        parsed = parse_linking_data(updated)
        assert parsed is not None
        self.assertEqual(parsed.x_account.x_username, "alice_new")

    def test_upsert_is_idempotent(self) -> None:
        data = _data()
        once = upsert_linking_section("# Alice\n", data)
        twice = upsert_linking_section(once, data)
        self.assertEqual(once, twice)

    def test_upsert_collapses_duplicate_sections(self) -> None:
        text = "# A\n\n" + _section(_VALID_PAYLOAD) + "\n\n" + _section(_VALID_PAYLOAD) + "\n"
        updated = upsert_linking_section(text, _data(x_user_id="999"))

        self.assertEqual(updated.count(BEGIN_MARKER), 1)
        parsed = parse_linking_data(updated)
        assert parsed is not None
        self.assertEqual(parsed.x_account.x_user_id, "999")

    def test_stray_end_marker_in_base_text(self) -> None:
        data = _data()
        base = f"Docs: the section closes with {END_MARKER}\n"

        once = upsert_linking_section(base, data)
        twice = upsert_linking_section(once, data)

        self.assertEqual(once, twice)
        self.assertEqual(twice.count(END_MARKER), 1)
        self.assertEqual(extract_linking_data(twice), data)

    def test_dangling_begin_marker_in_base_text(self) -> None:
        data = _data()
        base = f"Docs: the section opens with {BEGIN_MARKER}\n"

        once = upsert_linking_section(base, data)
        twice = upsert_linking_section(once, data)

        self.assertEqual(once, twice)
        self.assertEqual(twice.count(BEGIN_MARKER), 1)
        self.assertEqual(extract_linking_data(twice), data)

    def test_orphan_markers_around_existing_section_are_dropped(self) -> None:
        text = f"{END_MARKER}\n# A\n\n" + _section(_VALID_PAYLOAD) + f"\n\nTail {BEGIN_MARKER}\n"
        updated = upsert_linking_section(text, _data(x_user_id="999"))

        self.assertEqual(updated.count(BEGIN_MARKER), 1)
        self.assertEqual(updated.count(END_MARKER), 1)
        parsed = extract_linking_data(updated)
        assert parsed is not None
        self.assertEqual(parsed.x_account.x_user_id, "999")

    def test_end_marker_is_searched_after_begin(self) -> None:
        text = f"Quoted {END_MARKER} earlier.\n\n" + _section(_VALID_PAYLOAD)
        data = parse_linking_data(text)

        assert data is not None
        self.assertEqual(data.x_account.x_user_id, "123")


if __name__ == "__main__":
    unittest.main()
