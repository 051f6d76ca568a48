import unittest

from s3nav.errors import ErrorKind
from s3nav.models import ObjectPrefix
from s3nav.preview import decode_text, detect_lexer, detect_preview, hexdump


class TestDetectPreview(unittest.TestCase):
    def test_python_source(self) -> None:
        content = detect_preview("job.py", ObjectPrefix(data=b"import os\nprint(os.sep)\n"))
        self.assertEqual(content.lexer, "python")
        self.assertFalse(content.is_raw)
        self.assertIsNone(content.error)

    def test_unknown_extension_falls_back_to_text_or_guess(self) -> None:
        content = detect_preview("README", ObjectPrefix(data=b"just some words"))
        self.assertFalse(content.is_raw)
        self.assertIsInstance(content.lexer, str)

    def test_nul_bytes_mean_binary(self) -> None:
        content = detect_preview("blob", ObjectPrefix(data=b"PK\x03\x04\x00\x00"))
        self.assertTrue(content.is_binary)
        self.assertTrue(content.is_raw)
        self.assertIsNone(content.error)

    def test_invalid_utf8_records_decode_error(self) -> None:
        content = detect_preview("latin.txt", ObjectPrefix(data=b"caf\xe9 au lait"))
        self.assertTrue(content.is_raw)
        self.assertIs(content.error.kind, ErrorKind.DECODE)

    def test_character_cut_at_range_boundary(self) -> None:
        prefix = ObjectPrefix(data=b"abc" + "é".encode("utf-8")[:1], total_size=100)
        content = detect_preview("notes.txt", prefix)
        self.assertEqual(content.text, "abc")
        self.assertTrue(content.truncated)

    def test_cut_character_in_complete_object_is_an_error(self) -> None:
        prefix = ObjectPrefix(data=b"abc\xc3", total_size=4)
        content = detect_preview("notes.txt", prefix)
        self.assertTrue(content.is_raw)
        self.assertIs(content.error.kind, ErrorKind.DECODE)

    def test_decode_text_raises_in_the_middle(self) -> None:
        with self.assertRaises(UnicodeDecodeError):
            decode_text(b"a\xffbc", truncated=True)

    def test_content_type_hint(self) -> None:
        lexer = detect_lexer("object", '{"key": [1, 2, 3]}', "application/json")
        self.assertEqual(lexer, "json")

    def test_empty_object(self) -> None:
        content = detect_preview("empty.txt", ObjectPrefix(data=b"", total_size=0))
        self.assertEqual(content.text, "")
        self.assertFalse(content.truncated)


class TestHexdump(unittest.TestCase):
    def test_layout(self) -> None:
        dump = hexdump(b"AB\x00")
        self.assertTrue(dump.startswith("00000000  41 42 00"))
        self.assertTrue(dump.endswith("|AB.|"))

    def test_limit_and_rows(self) -> None:
        dump = hexdump(bytes(range(40)), limit=32)
        lines = dump.splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith("00000010"))


if __name__ == "__main__":
    unittest.main()
