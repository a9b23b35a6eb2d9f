from issueloop.ownership import OwnershipRules, glob_to_regex

OWNERSHIP_YAML = """
default_approvers: [maintainers]
ownership_rules:
  - paths: ["src/auth/**", "**/security/*.py"]
    approvers: [security-team]
  - pattern: package.json
    owners: [release-managers]
"""


def test_glob_translation() -> None:
    assert glob_to_regex("src/*.py").match("src/app.py")
    assert not glob_to_regex("src/*.py").match("src/sub/app.py")
    assert glob_to_regex("src/**").match("src/sub/deep/app.py")
    assert glob_to_regex("**/security/*.py").match("security/x.py")
    assert glob_to_regex("**/security/*.py").match("a/b/security/x.py")
    assert glob_to_regex("file?.txt").match("dir/file1.txt")
    assert not glob_to_regex("file?.txt").match("file12.txt")


def test_pattern_without_slash_matches_any_depth() -> None:
    regex = glob_to_regex("package.json")
    assert regex.match("package.json")
    assert regex.match("web/package.json")
    assert not regex.match("package-json")


def test_approvers_for_matching_paths() -> None:
    rules = OwnershipRules.from_yaml(OWNERSHIP_YAML)
    assert rules.approvers_for(["src/auth/login.py", "web/package.json"]) == [
        "security-team",
        "release-managers",
    ]
    assert rules.approvers_for(["docs/readme.md"]) == ["maintainers"]


def test_invalid_yaml_falls_back_to_defaults() -> None:
    rules = OwnershipRules.from_yaml("ownership_rules: [unclosed", default_approvers=["leads"])
    assert rules.rules == []
    assert rules.approvers_for(["anything.py"]) == ["leads"]


def test_missing_file_uses_configured_defaults() -> None:
    assert OwnershipRules.from_yaml(None, default_approvers=["leads"]).default_approvers == ["leads"]
    assert OwnershipRules.from_yaml("- just a list").default_approvers == []
