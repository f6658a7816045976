"""Tests for the programmatic migration runner."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from inviteflow.migrations import (
    ALEMBIC_DIR,
    _build_alembic_config,
    get_all_chains,
    run_migrations,
)

pytestmark = pytest.mark.unit


class TestChains:
    def test_core_chain_present(self) -> None:
        assert get_all_chains() == ["core"]

    def test_revision_files_exist(self) -> None:
        revisions = sorted(p.name for p in (ALEMBIC_DIR / "versions" / "core").glob("*.py"))
        assert revisions == ["001_create_core_tables.py", "002_add_reply_metadata.py"]


class TestConfig:
    def test_build_config(self) -> None:
        config = _build_alembic_config("postgresql://u:p@h:5432/d")
        assert config.get_main_option("script_location") == str(ALEMBIC_DIR)
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p@h:5432/d"
        assert config.get_main_option("version_locations").endswith("versions/core")

    def test_percent_in_password_escaped(self) -> None:
        config = _build_alembic_config("postgresql://u:p%40ss@h/d")
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p%40ss@h/d"


class TestRunMigrations:
    def test_upgrades_chain_head(self) -> None:
        with patch("inviteflow.migrations.command.upgrade") as upgrade:
            run_migrations("postgresql://u:p@h/d")

        config, target = upgrade.call_args[0]
        assert target == "core@head"
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p@h/d"

    def test_unknown_chain(self) -> None:
        with patch("inviteflow.migrations.command.upgrade") as upgrade:
            with pytest.raises(ValueError, match="Unknown migration chain"):
                run_migrations("postgresql://u:p@h/d", chain="analytics")
        upgrade.assert_not_called()
