"""
Unit tests for project display names and aliases.
"""

from tokenwatch.core.project_names import (
    UNKNOWN_PROJECT_LABEL,
    ProjectNameFormatter,
    parse_alias_pairs,
    parse_project_name,
)


class TestParseProjectName:
    """Test shortening of raw project directory names."""

    def test_unknown_names(self):
        """Verify empty and unknown names get a readable label."""
        assert parse_project_name("unknown") == UNKNOWN_PROJECT_LABEL
        assert parse_project_name("") == UNKNOWN_PROJECT_LABEL

    def test_home_directory_prefix_removed(self):
        """Verify the user's home path is stripped from flattened and slash paths."""
        assert parse_project_name("-Users-alice-Development-tokenwatch") == "tokenwatch"
        assert parse_project_name("/Users/alice/Development/tokenwatch") == "tokenwatch"
        assert parse_project_name("C:\\Users\\alice\\code\\tokenwatch") == "tokenwatch"

    def test_feature_branch_names(self):
        """Verify long compound names keep their last meaningful segments."""
        raw = "-Users-alice-Development-acme-billing-api--feature-ticket-002-configure-dependabot"
        assert parse_project_name(raw) == "configure-dependabot"

    def test_double_dash_keeps_project_part(self):
        """Verify the part before a double dash is kept."""
        assert parse_project_name("billing--hotfix") == "billing"

    def test_uuid_names_shortened(self):
        """Verify UUID-like names keep their last two segments."""
        assert parse_project_name("a2cd99ed-a586-4fe4-8f59-b0026409ec09.jsonl") == "8f59-b0026409ec09.jsonl"

    def test_simple_names_unchanged(self):
        """Verify short names pass through, minus edge separators."""
        assert parse_project_name("simple-project") == "simple-project"
        assert parse_project_name("-project-") == "project"


class TestParseAliasPairs:
    """Test alias parsing from the command line."""

    def test_pairs(self):
        """Verify pairs are split and trimmed."""
        assert parse_alias_pairs("app=Tracker, web = Storefront") == {"app": "Tracker", "web": "Storefront"}

    def test_incomplete_pairs_ignored(self):
        """Verify pairs without a name or alias are dropped."""
        assert parse_alias_pairs("app=,=x,plain,,ok=Fine") == {"ok": "Fine"}
        assert parse_alias_pairs(None) == {}


class TestProjectNameFormatter:
    """Test alias lookup and caching."""

    def test_raw_alias_wins(self):
        """Verify an alias for the raw name is used before parsing."""
        raw = "-Users-alice-Development-tokenwatch"
        names = ProjectNameFormatter({raw: "Raw Alias", "tokenwatch": "Parsed Alias"})
        assert names.format(raw) == "Raw Alias"

    def test_alias_for_parsed_name(self):
        """Verify an alias for the parsed name applies to the raw directory."""
        names = ProjectNameFormatter({"tokenwatch": "Usage Tracker"})
        assert names.format("-Users-alice-Development-tokenwatch") == "Usage Tracker"
        assert names.format("other") == "other"

    def test_without_aliases(self):
        """Verify the parsed name is returned when no alias matches."""
        assert ProjectNameFormatter().format("-Users-alice-Development-tokenwatch") == "tokenwatch"

    def test_results_cached_until_cleared(self):
        """Verify formatted names are cached per raw name."""
        names = ProjectNameFormatter({"app": "Tracker"})
        assert names.format("app") == "Tracker"

        names.aliases["app"] = "Renamed"
        assert names.format("app") == "Tracker"

        names.clear()
        assert names.format("app") == "Renamed"

    def test_command_line_overrides_config(self):
        """Verify command line pairs overlay configured aliases."""
        names = ProjectNameFormatter.from_config({"app": "Config", "web": "Store"}, "app=Cli")
        assert names.format("app") == "Cli"
        assert names.format("web") == "Store"
