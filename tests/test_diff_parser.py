"""Tests for diff_parser.py: git and plain unified diffs."""

from reviw.tools.diff_parser import parse_diff


SIMPLE_DIFF = """\
diff --git a/file.txt b/file.txt
index 1234567..abcdefg 100644
--- a/file.txt
+++ b/file.txt
@@ -1,3 +1,4 @@
 line1
-old line
+new line
+added line
 line3"""

MULTI_FILE_DIFF = """\
diff --git a/file1.txt b/file1.txt
index 1234567..abcdefg 100644
--- a/file1.txt
+++ b/file1.txt
@@ -1,2 +1,2 @@
 line1
-old
+new
diff --git a/file2.txt b/file2.txt
index 2345678..bcdefgh 100644
--- a/file2.txt
+++ b/file2.txt
@@ -1,1 +1,2 @@
 content
+added"""


# ---------------------------------------------------------------------------
# Basic structure
# ---------------------------------------------------------------------------

class TestParseDiff:
    def test_simple(self):
        result = parse_diff(SIMPLE_DIFF)
        assert len(result) == 1
        f = result[0]
        assert f.old_path == "file.txt"
        assert f.new_path == "file.txt"
        assert not f.is_new and not f.is_deleted and not f.is_binary
        assert len(f.hunks) == 1
        assert f.hunks[0].old_start == 1
        assert f.hunks[0].new_start == 1
        assert len(f.hunks[0].lines) == 5

    def test_line_types_and_numbers(self):
        lines = parse_diff(SIMPLE_DIFF)[0].hunks[0].lines
        assert [ln.type for ln in lines] == ["ctx", "del", "add", "add", "ctx"]
        assert lines[1].content == "old line"
        assert (lines[1].old_line, lines[1].new_line) == (2, None)
        assert (lines[3].old_line, lines[3].new_line) == (None, 3)
        assert (lines[4].old_line, lines[4].new_line) == (3, 4)

    def test_hunk_header_context(self):
        diff = """\
diff --git a/file.js b/file.js
--- a/file.js
+++ b/file.js
@@ -10,5 +10,6 @@ function example() {
 context line
-removed
+added
 context"""
        hunk = parse_diff(diff)[0].hunks[0]
        assert hunk.old_start == 10
        assert hunk.new_start == 10
        assert hunk.context == " function example() {"

    def test_multiple_files(self):
        result = parse_diff(MULTI_FILE_DIFF)
        assert [f.new_path for f in result] == ["file1.txt", "file2.txt"]
        assert all(len(f.hunks) == 1 for f in result)

    def test_multiple_hunks(self):
        diff = """\
diff --git a/file.txt b/file.txt
--- a/file.txt
+++ b/file.txt
@@ -1,3 +1,3 @@
 line1
-old1
+new1
 line3
@@ -10,3 +10,3 @@
 line10
-old2
+new2
 line12"""
        hunks = parse_diff(diff)[0].hunks
        assert [h.old_start for h in hunks] == [1, 10]

    def test_empty(self):
        assert parse_diff("") == []

    def test_paths_with_spaces(self):
        diff = """\
diff --git a/path with spaces/file.txt b/path with spaces/file.txt
index 1234567..abcdefg 100644
--- a/path with spaces/file.txt
+++ b/path with spaces/file.txt
@@ -1,1 +1,1 @@
-old
+new"""
        f = parse_diff(diff)[0]
        assert f.old_path == "path with spaces/file.txt"
        assert f.new_path == "path with spaces/file.txt"

    def test_japanese_content(self):
        diff = """\
diff --git a/japanese.txt b/japanese.txt
--- a/japanese.txt
+++ b/japanese.txt
@@ -1,2 +1,2 @@
 こんにちは
-古いテキスト
+新しいテキスト"""
        lines = parse_diff(diff)[0].hunks[0].lines
        assert lines[1].content == "古いテキスト"
        assert lines[2].content == "新しいテキスト"


# ---------------------------------------------------------------------------
# New / deleted / binary
# ---------------------------------------------------------------------------

class TestFileStates:
    def test_new_file(self):
        diff = """\
diff --git a/newfile.txt b/newfile.txt
new file mode 100644
index 0000000..abcdefg
--- /dev/null
+++ b/newfile.txt
@@ -0,0 +1,3 @@
+line1
+line2
+line3"""
        f = parse_diff(diff)[0]
        assert f.is_new and not f.is_deleted
        assert f.old_path is None
        assert f.new_path == "newfile.txt"
        assert [ln.type for ln in f.hunks[0].lines] == ["add", "add", "add"]

    def test_deleted_file(self):
        diff = """\
diff --git a/deleted.txt b/deleted.txt
deleted file mode 100644
index abcdefg..0000000
--- a/deleted.txt
+++ /dev/null
@@ -1,2 +0,0 @@
-line1
-line2"""
        f = parse_diff(diff)[0]
        assert f.is_deleted and not f.is_new
        assert f.old_path == "deleted.txt"
        assert f.new_path is None
        assert [ln.type for ln in f.hunks[0].lines] == ["del", "del"]

    def test_binary_new_file(self):
        diff = """\
diff --git a/image.png b/image.png
new file mode 100644
index 0000000..abcdefg
Binary files /dev/null and b/image.png differ"""
        f = parse_diff(diff)[0]
        assert f.is_binary
        assert f.hunks == []
        assert f.new_path == "image.png"
        assert f.old_path is None

    def test_binary_modified_between_text_files(self):
        diff = """\
diff --git a/logo.png b/logo.png
index 1111111..2222222 100644
Binary files a/logo.png and b/logo.png differ
diff --git a/readme.md b/readme.md
--- a/readme.md
+++ b/readme.md
@@ -1 +1 @@
-old
+new"""
        result = parse_diff(diff)
        assert len(result) == 2
        assert result[0].is_binary and result[0].hunks == []
        assert result[0].old_path == "logo.png" and result[0].new_path == "logo.png"
        assert not result[1].is_binary
        assert len(result[1].hunks[0].lines) == 2

    def test_rename(self):
        diff = """\
diff --git a/old name.txt b/new name.txt
similarity index 100%
rename from old name.txt
rename to new name.txt"""
        f = parse_diff(diff)[0]
        assert f.old_path == "old name.txt"
        assert f.new_path == "new name.txt"
        assert f.hunks == []


# ---------------------------------------------------------------------------
# Tolerance
# ---------------------------------------------------------------------------

class TestTolerance:
    def test_no_newline_marker_skipped(self):
        diff = """\
diff --git a/a.txt b/a.txt
--- a/a.txt
+++ b/a.txt
@@ -1 +1 @@
-old
\\ No newline at end of file
+new
\\ No newline at end of file"""
        lines = parse_diff(diff)[0].hunks[0].lines
        assert [(ln.type, ln.content) for ln in lines] == [("del", "old"), ("add", "new")]

    def test_unknown_prefix_is_context(self):
        diff = """\
diff --git a/a.txt b/a.txt
--- a/a.txt
+++ b/a.txt
@@ -1,2 +1,2 @@
*weird line
-old
+new"""
        lines = parse_diff(diff)[0].hunks[0].lines
        assert lines[0].type == "ctx"
        assert lines[0].content == "*weird line"

    def test_plain_unified_diff(self):
        diff = """\
--- one.txt\t2024-01-01 00:00:00
+++ one.txt\t2024-01-02 00:00:00
@@ -1 +1 @@
-a
+b
--- two.txt
+++ two.txt
@@ -1 +1,2 @@
 x
+y"""
        result = parse_diff(diff)
        assert [f.new_path for f in result] == ["one.txt", "two.txt"]
        assert len(result[1].hunks[0].lines) == 2

    def test_malformed_block_does_not_stop_parsing(self):
        diff = """\
diff --git a/broken.txt b/broken.txt
@@ garbage header @@
this is not a diff line
diff --git a/ok.txt b/ok.txt
--- a/ok.txt
+++ b/ok.txt
@@ -1 +1 @@
-x
+y"""
        result = parse_diff(diff)
        assert len(result) == 2
        assert result[0].new_path == "broken.txt"
        assert result[0].hunks == []
        assert result[1].new_path == "ok.txt"
        assert len(result[1].hunks[0].lines) == 2

    def test_crlf_input(self):
        diff = SIMPLE_DIFF.replace("\n", "\r\n")
        f = parse_diff(diff)[0]
        assert f.new_path == "file.txt"
        assert f.hunks[0].lines[0].content == "line1"
