"""
Unit tests for personal data scrubbing.
"""

import pytest

from sitesnap.core.exceptions import ScrubError
from sitesnap.snapshot.db_export import DatabaseExport, TableDump
from sitesnap.snapshot.scrub import COLLISION_SUFFIX, ScrubRule, Scrubber, synthetic_value


def make_users() -> TableDump:
    return TableDump(
        name="wp_users",
        columns=[
            "ID", "user_login", "user_nicename", "user_email", "user_url",
            "display_name", "user_pass", "user_activation_key",
        ],
        primary_key="ID",
        rows=[
            [1, "alice", "alice", "alice@real-mail.org", "https://alice.blog", "Alice Real", "$P$hash1", ""],
            [2, "bob", "bob", "bob@real-mail.org", "", "Bob Real", "$P$hash2", "k2"],
        ],
    )


def make_usermeta() -> TableDump:
    return TableDump(
        name="wp_usermeta",
        columns=["umeta_id", "user_id", "meta_key", "meta_value"],
        primary_key="umeta_id",
        rows=[
            [1, 1, "first_name", "Alice"],
            [2, 1, "show_admin_bar_front", "true"],
        ],
    )


class TestSyntheticValue:
    """Tests for synthetic_value."""

    def test_deterministic(self):
        assert synthetic_value("email", 7, "x@y.z") == synthetic_value("email", 7, "other@y.z")

    def test_key_changes_value(self):
        assert synthetic_value("email", 1, "x@y.z") != synthetic_value("email", 2, "x@y.z")

    def test_none_stays_none(self):
        assert synthetic_value("email", 1, None) is None

    def test_collision_with_original_is_avoided(self):
        value = synthetic_value("email", 1, "user1@example.com")
        assert value == "user1@example.com" + COLLISION_SUFFIX

    def test_bytes_original_gets_bytes(self):
        value = synthetic_value("login", 3, b"carol")
        assert isinstance(value, bytes)
        assert value == b"user3"

    def test_unknown_kind(self):
        with pytest.raises(ScrubError):
            synthetic_value("nope", 1, "x")


class TestScrubber:
    """Tests for Scrubber."""

    def test_no_original_value_survives(self):
        export = DatabaseExport(tables=[make_users()])
        originals = {v for row in make_users().rows for v in row[1:]}

        scrubbed = Scrubber().scrub(export)

        values = {v for row in scrubbed.get("wp_users").rows for v in row[1:]}
        assert not values & originals

    def test_same_input_same_output(self):
        first = Scrubber().scrub(DatabaseExport(tables=[make_users()])).to_bytes()
        second = Scrubber().scrub(DatabaseExport(tables=[make_users()])).to_bytes()

        assert first == second

    def test_key_column_preserved(self):
        scrubbed = Scrubber().scrub_table(make_users())

        assert [row[0] for row in scrubbed.rows] == [1, 2]

    def test_input_not_modified(self):
        table = make_users()
        Scrubber().scrub_table(table)

        assert table.rows[0][3] == "alice@real-mail.org"

    def test_conditional_rule_only_touches_matching_rows(self):
        scrubbed = Scrubber().scrub_table(make_usermeta())

        assert scrubbed.rows[0][3] != "Alice"
        assert scrubbed.rows[1][3] == "true"

    def test_untargeted_table_passes_through(self):
        posts = TableDump(name="wp_posts", columns=["ID", "post_title"], rows=[[1, "Hello"]])

        assert Scrubber().scrub_table(posts) is posts

    def test_table_prefix(self):
        table = make_users()
        table.name = "blog_users"

        assert Scrubber(table_prefix="wp_").scrub_table(table) is table
        assert Scrubber(table_prefix="blog_").scrub_table(table).rows[0][1] != "alice"

    def test_disabled_returns_export_unchanged(self):
        export = DatabaseExport(tables=[make_users()])
        before = export.to_bytes()

        result = Scrubber(enabled=False).scrub(export)

        assert result is export
        assert result.to_bytes() == before

    def test_missing_column_raises(self):
        table = TableDump(name="wp_users", columns=["ID", "user_login"], rows=[[1, "alice"]])

        with pytest.raises(ScrubError):
            Scrubber().scrub_table(table)

    def test_lazy_rows_stay_lazy(self):
        table = make_users()
        table.rows = iter(table.rows)

        scrubbed = Scrubber().scrub_table(table)

        assert not isinstance(scrubbed.rows, list)
        assert len(list(scrubbed.rows)) == 2

    def test_custom_rules(self):
        rules = [ScrubRule("posts", "post_title", "ID", "text")]
        posts = TableDump(name="wp_posts", columns=["ID", "post_title"], rows=[[5, "Secret plan"]])

        scrubbed = Scrubber(rules=rules).scrub_table(posts)

        assert scrubbed.rows[0][1] == "Scrubbed text 5"

    def test_unknown_kind_in_rules_rejected(self):
        with pytest.raises(ScrubError):
            Scrubber(rules=[ScrubRule("posts", "post_title", "ID", "bogus")])
