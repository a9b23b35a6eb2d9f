from issueloop.diffs import parse_unified_diff, post_change_line_counts

GIT_DIFF = """diff --git a/src/app.py b/src/app.py
index 1111111..2222222 100644
--- a/src/app.py
+++ b/src/app.py
@@ -1,3 +1,3 @@
 import os
--- a comment that looks like a header
+++ a line that looks like a header
 print(os.name)
diff --git a/docs/new.md b/docs/new.md
new file mode 100644
--- /dev/null
+++ b/docs/new.md
@@ -0,0 +1,2 @@
+# Title
+body
\\ No newline at end of file
diff --git a/old.txt b/old.txt
deleted file mode 100644
--- a/old.txt
+++ /dev/null
@@ -1 +0,0 @@
-gone
"""

PLAIN_DIFF = """--- a/one.py
+++ b/one.py
@@ -1 +1 @@
-a
+b
--- a/two.py
+++ b/two.py
@@ -1,2 +1,1 @@
-x
 y
"""

RENAME_DIFF = """diff --git a/old/name.py b/new/name.py
similarity index 90%
rename from old/name.py
rename to new/name.py
--- a/old/name.py
+++ b/new/name.py
@@ -1 +1 @@
-before
+after
"""


def test_git_diff_counts_and_file_kinds() -> None:
    parsed = parse_unified_diff(GIT_DIFF)

    assert parsed.paths == ["src/app.py", "docs/new.md", "old.txt"]
    app, new, old = parsed.files
    assert (app.added, app.deleted) == (1, 1)
    assert new.is_new and (new.added, new.deleted) == (2, 0)
    assert old.is_deleted and (old.added, old.deleted) == (0, 1)
    assert parsed.total_added == 3
    assert parsed.total_deleted == 2


def test_plain_diff_without_git_headers() -> None:
    parsed = parse_unified_diff(PLAIN_DIFF)
    assert parsed.paths == ["one.py", "two.py"]
    assert parsed.files[1].deleted == 1
    assert parsed.files[1].added == 0


def test_rename() -> None:
    [renamed] = parse_unified_diff(RENAME_DIFF).files
    assert renamed.is_rename
    assert renamed.old_path == "old/name.py"
    assert renamed.path == "new/name.py"


def test_empty_diff() -> None:
    parsed = parse_unified_diff("")
    assert parsed.is_empty
    assert parsed.files == []
    assert parsed.size_bytes == 0
    assert parse_unified_diff(None).is_empty


def test_hunk_before_any_file_header_is_ignored() -> None:
    parsed = parse_unified_diff("@@ -1 +1 @@\n+stray\n--- a/f.py\n+++ b/f.py\n@@ -1 +1 @@\n-a\n+b\n")
    assert parsed.paths == ["f.py"]
    assert (parsed.files[0].added, parsed.files[0].deleted) == (1, 1)


def test_post_change_line_counts() -> None:
    counts = post_change_line_counts(parse_unified_diff(GIT_DIFF), {"src/app.py": 3, "old.txt": 1})
    assert counts == {"src/app.py": 3, "docs/new.md": 2}

    renamed = post_change_line_counts(parse_unified_diff(RENAME_DIFF), {"old/name.py": 40})
    assert renamed == {"new/name.py": 40}

    assert post_change_line_counts(parse_unified_diff(PLAIN_DIFF), {}) == {}
